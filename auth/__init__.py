"""auth/ -- Principals, credentials, sessions, lockout and the AuthService facade.

Layer rule: auth/ imports from core/ and rbac/ only.
rbac/ never imports from auth/; callers import AuthService from auth.service.
"""
