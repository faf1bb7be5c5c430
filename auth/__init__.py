"""auth/ -- Authentication and credential lifecycle package for AuthGate.

Layer rule: auth/ imports stdlib, third-party libraries, core/config, and the
notify/ gateway contract. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
