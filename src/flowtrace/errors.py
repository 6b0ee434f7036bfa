from typing import Optional


class FlowTraceError(Exception):
    """Base error for the flow trace engine.

    ``user_message`` is the text meant for display; internal detail stays in
    the exception args.
    """

    default_message = "Flow trace failed"

    def __init__(self, message: Optional[str] = None, *, user_message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.user_message = user_message or message or self.default_message


class ValidationError(FlowTraceError):
    default_message = "Missing start or rpcUrl"


class NetworkError(FlowTraceError):
    default_message = "Network timeout. Please try again later."


class JobError(FlowTraceError):
    default_message = "Background job failed"


class ProtocolUnsupportedError(FlowTraceError):
    default_message = "Job status endpoint unavailable"


class TraceTimeoutError(FlowTraceError):
    default_message = (
        "This request is taking longer than usual. "
        "Please try 'Use Cache' from Recent or try again later."
    )
