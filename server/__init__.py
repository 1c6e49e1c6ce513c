# =============================================================================
# Streaming Caption Server - Server Package
# =============================================================================
# This package contains the server-side components: image preprocessing,
# model resolution, the autoregressive decode loop, incremental
# detokenization, the per-connection streaming session, and the FastAPI app.
# =============================================================================
