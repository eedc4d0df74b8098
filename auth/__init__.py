"""auth/ -- Identity core for Staffgate.

Credentials, bearer tokens, email verification, TOTP, federation and staff codes.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/; configuration arrives through
constructor arguments. api/ imports from auth/, not the other way around.
"""
