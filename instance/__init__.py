"""instance/ -- Instance-wide settings (name, logo, setup state, ...).

Reads go cache -> database -> built-in defaults, backfilling the cache on the
way out; a key found nowhere is remembered as a negative entry so repeated
lookups stop reaching the database until it expires.

Layer rule: instance/ imports only stdlib, third-party libraries, core/ and
cache/. It does NOT import from api/, auth/, or moderation/.
"""
