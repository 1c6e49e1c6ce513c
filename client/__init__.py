# =============================================================================
# Streaming Caption Server - Client Package
# =============================================================================
# This package contains the HTTP client and command-line tool for sending
# images to the one-shot caption endpoint.
# =============================================================================
