class AnalysisError(Exception):
    """Base class for exceptions in this package."""
    pass

class InsufficientDataError(AnalysisError):
    """Exception raised when there is not enough data to proceed."""
    pass

class TargetConstantError(AnalysisError):
    """Exception raised when the outcome variable is constant."""
    pass

class ExcessiveMissingDataError(AnalysisError):
    """Exception raised when there is too much missing data."""
    pass

class ValidationError(AnalysisError):
    """Exception raised for invalid arguments, before any computation starts."""
    pass

class FormulaError(ValidationError):
    """Exception raised when the outcome formula cannot be parsed."""
    pass

class InvalidModelError(ValidationError):
    """Exception raised for an unknown model family or a model that was never built."""
    pass

class InvalidTunerError(ValidationError):
    """Exception raised for an unknown hyperparameter tuner."""
    pass

class InvalidMetricError(ValidationError):
    """Exception raised for an unknown metric or one that does not fit the task."""
    pass

class UnsupportedMethodError(ValidationError):
    """Exception raised when a sensitivity method is unknown or its precondition fails."""

    def __init__(self, method, requirement):
        self.method = method
        self.requirement = requirement
        super().__init__(f"Method '{method}' cannot be used: {requirement}")

class EmptyMethodSetError(ValidationError):
    """Exception raised when no sensitivity method was requested."""
    pass

class ComputationError(AnalysisError):
    """
    Exception raised when a numerical computation fails.

    `partial_result` holds the analysis object with every method that finished
    before the failure, so earlier results are not lost.
    """

    def __init__(self, message, partial_result=None):
        super().__init__(message)
        self.partial_result = partial_result
