"""
Timeout and retry constants for the control-plane bootstrap.

Centralizes timing values so that tuning happens in one place.
"""

from __future__ import annotations

# =============================================================================
# Key Vault Secret Recovery
# =============================================================================

# Maximum time to wait for a recovered secret to become readable
SECRET_RECOVERY_TIMEOUT_S = 60.0

# Initial delay between readiness polls after a recover call
SECRET_RECOVERY_POLL_INTERVAL_S = 2.0

# Exponential backoff multiplier between polls
SECRET_RECOVERY_BACKOFF = 2.0

# Upper bound for a single poll delay
SECRET_RECOVERY_MAX_DELAY_S = 15.0

# =============================================================================
# HTTP Client Timeouts
# =============================================================================

# Timeout for the public IP lookup of the agent
AGENT_IP_LOOKUP_TIMEOUT_S = 5.0

# =============================================================================
# Secret Expiry
# =============================================================================

# Secrets written by the bootstrap expire one year after being set
SECRET_EXPIRY_YEARS = 1
