"""Exception types shared by the parsing, synthesis and HTTP layers."""


class LyricsSlidesError(Exception):
    """Base class for every error the generator reports to its caller."""

    status_code = 500

    def __init__(self, message: str, details: str = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class RequestValidationError(LyricsSlidesError, ValueError):
    """The request payload is missing, empty or has an unrecognized shape."""

    status_code = 400


class TemplateError(LyricsSlidesError):
    """The uploaded template is not a usable presentation package."""

    status_code = 400


class SynthesisError(LyricsSlidesError):
    """Building the output package failed after mutation started."""

    status_code = 500
