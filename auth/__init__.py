"""auth/ -- Administrator authentication core for AdminGate.

Password hashing, token helpers, transient sessions, persistent admins,
federated identities and CSRF protection.

Layer rule: auth/ imports stdlib, third-party libraries and core.config only.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
