"""auth/ -- Authentication, roles and permission checks for Cosmos.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and cache/.
It does NOT import from api/ or moderation/.
api/ imports from auth/, not the other way around.
"""
