class CostBridgeError(Exception):
    """
    base class for every error raised by costbridge.
    """


class ConfigError(CostBridgeError):
    pass


class WindowError(CostBridgeError, ValueError):
    pass


class RateLimiterWaitError(CostBridgeError):
    """
    raised when a rate limiter wait cannot complete: the wait was
    cancelled, it would overrun the caller's deadline, or more tokens
    were asked for than the bucket can ever hold.
    """


class ProviderError(CostBridgeError):
    """
    terminal provider error, raised once retries are exhausted or the
    failure is not worth retrying. Carries the HTTP status when there
    was one.
    """

    def __init__(
        self,
        message: "str",
        *,
        attempts: "int" = 1,
        status_code: "int | None" = None,
    ) -> "None":
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code


class CatalogError(CostBridgeError):
    """
    the price catalog source could not be fetched or parsed. No
    window can be priced without it.
    """
