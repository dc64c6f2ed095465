"""auth/ -- Authentication and verification core for LedgerGate.

Layer rule: auth/ imports only stdlib, third-party libraries and core/
(configuration-free helpers such as core.clock). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
