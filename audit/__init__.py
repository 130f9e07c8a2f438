"""audit/ -- Append-only audit trail for AdminGate privileged actions.

Layer rule: audit/ imports only stdlib + third-party libraries + core/ and
the enums in auth.models. It does NOT import from api/.
"""
