"""Error taxonomy shared by the model adapter, providers, cache and pipeline."""


class ShiniseError(Exception):
    kind = "internal"


class ModelError(ShiniseError):
    """Generative-AI call failed (transport or provider-side)."""

    kind = "model"


class ConfigError(ModelError):
    """No AI credentials configured; callers degrade instead of crashing."""

    kind = "config"


class RateLimitError(ModelError):
    """Provider signalled HTTP 429 / RESOURCE_EXHAUSTED."""

    kind = "rate_limit"


class ParseError(ModelError):
    """Model output could not be parsed as JSON after cleanup."""

    kind = "parse"


class UpstreamError(ShiniseError):
    """Places or geocoding provider transport failure."""

    kind = "upstream"


class NotFoundError(ShiniseError):
    kind = "not_found"


class CacheError(ShiniseError):
    kind = "cache"


class InvalidRequestError(ShiniseError):
    kind = "invalid_request"
