"""
integrations — third-party connections for organization notes.

Provides a generic provider framework that handles:
  • OAuth auth-URL generation with signed, time-boxed state
  • Callback handling (code → token exchange)
  • Per-organization token storage (AES-256-GCM at rest) & refresh with retry
  • Channel discovery and note → channel connections
  • Fan-out of note created / updated / deleted events to connected channels

Each provider (Slack, Jira, Linear, ...) is a subclass of IntegrationProvider.
"""
