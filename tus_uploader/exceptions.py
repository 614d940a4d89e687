"""
Global tus_uploader exception classes.

Transport failures carry the HTTP status and body of the response that
caused them, the same way tusclient exceptions do.
"""


class TusUploadError(Exception):
    """Base class for every error raised by tus_uploader."""

    pass


class ConfigError(TusUploadError, ValueError):
    """Exception raised when an upload is configured incorrectly."""

    pass


class ReadError(TusUploadError):
    """Exception raised when the byte source cannot be read."""

    pass


class UploadCancelled(TusUploadError):
    """Exception raised internally when an in-flight request was aborted."""

    pass


class TusCommunicationError(TusUploadError):
    """
    Exception raised when communication with TUS server behaves unexpectedly.

    Attributes:
        message (str): Main message of the exception
        status_code (int): HTTP status code of response indicating an error
        response_content (bytes): Content of response indicating an error
    """

    def __init__(self, message=None, status_code=None, response_content=None):
        default_message = f"Communication with TUS server failed with status {status_code}"
        message = message or default_message
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_content = response_content


class CreateError(TusCommunicationError):
    """Exception raised when the server refuses to create an upload."""

    pass


class TransferError(TusCommunicationError):
    """Exception raised when a chunk or offset request fails mid-transfer."""

    pass


class ProtocolViolation(TransferError):
    """Exception raised when the server reports an impossible offset."""

    pass


class UploadNotFound(TransferError):
    """Exception raised when the server no longer knows an upload."""

    pass
