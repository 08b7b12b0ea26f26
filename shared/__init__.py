# =============================================================================
# Dental Stream Client - Shared Package
# =============================================================================
# Wire-level message schemas exchanged between the streaming client and the
# inference server.
# =============================================================================
