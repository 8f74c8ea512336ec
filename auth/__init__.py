"""auth/ -- Token authentication and session renewal for SessionGate.

Layer rule: auth/ imports only stdlib + third-party libraries, plus
core/config.py for the Settings type. It does NOT import from api/.
api/ and main.py import from auth/, not the other way around.
"""
