"""Error taxonomy for the orchestration layer."""


class HealthBayError(Exception):
    pass


class StructuredOutputParseError(HealthBayError):
    """Generator text had no extractable or valid structured block."""

    def __init__(self, schema: str, reason: str, raw: str = ""):
        self.schema = schema
        self.reason = reason
        self.raw    = raw
        super().__init__(f"{schema}: {reason}")


class RetrievalUnavailable(HealthBayError):
    pass


class GenerationFailed(HealthBayError):
    pass


class MissingSessionState(HealthBayError):
    """A test response arrived without a usable test session."""


class PersistenceFailure(HealthBayError):
    pass
