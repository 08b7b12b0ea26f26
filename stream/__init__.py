# =============================================================================
# Dental Stream Client - Streaming Engine Package
# =============================================================================
# This package contains the client-side streaming engine: session state,
# protocol codec, WebSocket connection management, frame pacing, frame
# capture and the command line entry point.
# =============================================================================
