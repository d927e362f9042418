class PerfStatError(Exception):
    """Base exception for perfstat errors."""
    pass

class ConfigError(PerfStatError):
    """Configuration loading specific errors."""
    pass

class MetadataError(PerfStatError):
    """Module/topic metadata is missing or malformed."""
    pass


class FormulaError(PerfStatError):
    """
    Raised while resolving or evaluating a question formula.
    Always recovered inside the recomputation pass; never reaches the caller
    of a field-change event.
    """

    def __init__(self, message: str, *, expression: str | None = None):
        super().__init__(message)
        self.expression = expression


class InvalidExpression(FormulaError):
    """Expression has characters outside the allow-list or is malformed."""
    pass

class DivisionByZero(FormulaError):
    pass

class UnresolvedReference(InvalidExpression):
    """A formula operand names a question/subtopic cell the topic does not have."""
    pass


class NavigationExhausted(PerfStatError):
    """No populated module/topic position was found within the search bounds."""
    pass

class PersistenceFailure(PerfStatError):
    """Saving statistics failed; in-memory form state is left untouched."""
    pass

class FieldError(PerfStatError):
    """A field change names a key the open form does not have, or carries a bad value."""
    pass
