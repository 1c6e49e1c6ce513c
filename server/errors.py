# =============================================================================
# Streaming Caption Server - Error Taxonomy
# =============================================================================
# Request-scoped failures raised by the captioning pipeline and the streaming
# session. None of them are retried; each aborts only the request (or the
# session) that triggered it.
# =============================================================================


class CaptionError(Exception):
    """Base class for all captioning failures."""


class DecodeError(CaptionError):
    """The image bytes are not a recognizable image format or are corrupt."""


class WeightLoadError(CaptionError):
    """Model weights could not be fetched or parsed."""


class TokenizerLoadError(CaptionError):
    """The tokenizer vocabulary could not be fetched or parsed."""


class InferenceError(CaptionError):
    """A tensor-shape or numeric failure occurred during generation."""


class TransportError(CaptionError):
    """Sending or receiving a frame on the client connection failed."""


# Failures of a single caption request; the session survives these.
PIPELINE_ERRORS = (DecodeError, WeightLoadError, TokenizerLoadError, InferenceError)
