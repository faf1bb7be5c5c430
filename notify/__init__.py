"""notify/ -- Outbound notification delivery for AuthGate.

Layer rule: notify/ imports only stdlib + third-party libraries.
auth/ depends on the EmailGateway protocol defined here, never on a
concrete provider; api/main.py picks the provider at startup.
"""
