"""
Error taxonomy for the bridge and the mapping to client-visible responses.

Upstream rejections are passed through verbatim (status, body and content
type). Every other failure becomes a generic 500 with a short message, so no
internal detail leaks to the client.
"""

from fastapi.responses import JSONResponse, Response

INTERNAL_ERROR_STATUS = 500
DEFAULT_CONTENT_TYPE = "text/plain; charset=utf-8"


class ProxyError(Exception):
    """Base class for failures at the upstream boundary."""


class UpstreamRejected(ProxyError):
    """The upstream answered with a non-success status."""

    def __init__(
        self, status_code: int, body: bytes, content_type: str | None = None
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.content_type = content_type or DEFAULT_CONTENT_TYPE
        super().__init__(f"Upstream returned {status_code}")

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class TransportFailure(ProxyError):
    """The upstream could not be reached or its response could not be used."""


class StreamInterrupted(ProxyError):
    """The upstream event stream broke after client headers were sent."""


def to_client_error(error: BaseException, message: str) -> Response:
    """Build the client response for a failed request.

    Args:
        error: The exception raised while serving the request
        message: Short description returned for anything that is not an
            upstream rejection

    Returns:
        The upstream status and body unchanged for UpstreamRejected,
        otherwise a 500 with ``{"error": message}``
    """
    if isinstance(error, UpstreamRejected):
        return Response(
            content=error.body,
            status_code=error.status_code,
            headers={"content-type": error.content_type},
        )
    return JSONResponse({"error": message}, status_code=INTERNAL_ERROR_STATUS)
