"""
auth: caller identity and tenant authorization.

Provides:
  • signed bearer token creation & verification (``auth.jwt``)
  • the tenant membership ``AuthorizationGate`` (``auth.gate``)
  • ``get_current_actor`` / ``get_gate`` FastAPI dependencies
"""
