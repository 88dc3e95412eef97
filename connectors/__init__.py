"""
connectors: OAuth integrations with ERP and calendar providers.

Provides a generic connector framework that handles:
  • OAuth2 authorization-URL generation with signed, tenant-bound state
  • Callback handling (code → token exchange → account enrichment)
  • Per-tenant connection storage with Fernet encryption at rest
  • Token refresh and month-by-month data sync
  • Revocation / disconnect

Each provider (Fortnox, Google, Microsoft) is a subclass of BaseConnector;
``MockConnector`` stands in for any of them when credentials are absent.
"""
