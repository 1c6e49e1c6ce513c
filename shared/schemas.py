# =============================================================================
# Streaming Caption Server - Shared API Schemas
# =============================================================================
# Wire contracts shared by the server and the client: the pydantic models
# returned by the JSON endpoints and the sentinel text frame that marks the
# end of one caption on the streaming endpoint.
#
# The caption itself travels as plain text: the one-shot endpoint returns it
# as the response body (HTTP 201) and the streaming endpoint sends it as a
# series of text frames followed by END_OF_MESSAGE.
# =============================================================================

from pydantic import BaseModel, Field

# Final text frame of every caption stream; never produced as a fragment
END_OF_MESSAGE = "<EOM>"


class HealthResponse(BaseModel):
    """
    Server liveness and the model it is configured to serve.

    Attributes:
        status:         "ok" once the server is accepting requests.
        model_id:       Hub repository id of the captioning model.
        model_revision: Revision the weights are fetched from.
        model_variant:  "full" or "quantized".
        device:         Compute device for full-precision inference.
        uptime_seconds: Seconds since application startup.
    """

    status: str = Field(..., description="Server status")
    model_id: str
    model_revision: str
    model_variant: str
    device: str
    uptime_seconds: float
