class ConfigurationError(ValueError):
    """Raised by ``initialize`` when the metric cannot be evaluated as configured."""


class InvalidSampleError(ValueError):
    """A worker met a sample it cannot place in the histogram (non-finite value)."""

    def __init__(self, sample_index, message=None):
        self.sample_index = sample_index
        if message is None:
            message = f"Sample {sample_index} has a non-finite fixed or moving intensity."
        super().__init__(message)


class InsufficientSamplesError(RuntimeError):
    """No sample was valid, e.g. every point mapped outside the moving image buffer."""
