# =============================================================================
# Streaming Caption Server - Shared Package
# =============================================================================
# Wire contracts used by both the server and the client.
# =============================================================================
