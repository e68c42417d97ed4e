"""moderation/ -- Violation and dispute records ("vortex").

Layer rule: moderation/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, auth/, or cache/. Authorization happens in the
api/ layer before any moderation store call.
"""
