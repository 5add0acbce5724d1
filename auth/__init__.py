"""auth/ -- Authentication and authorization package for Shared Thread.

Password + optional TOTP login, server-side sessions behind an opaque signed
cookie, role checks, and the private-network gate for staff surfaces.

Layer rule: auth/ imports only stdlib, third-party libraries and core/config.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
