class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class UpstreamFetchError(RuntimeError):
    """Raised when the channel page cannot be fetched after retries."""

    def __init__(
        self,
        url: str,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        self.url = url
        self.status_code = status_code
        self.reason = reason
        detail = f"HTTP {status_code}" if status_code is not None else reason
        super().__init__(f"Failed to fetch {url}: {detail or 'unknown error'}")
