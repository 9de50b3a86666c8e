from enum import Enum


class ErrorCode(str, Enum):
    INVALID_REPOSITORY = "Invalid Git directory"
    INVALID_REVISION = "Not a valid commit"
    EMPTY_CHANGE_SET = "Git diff is empty"
    EMPTY_SELECTION = "No versioned files to analyze"
    BUILD_DIR_NOT_FOUND = "Build directory not found"
    DIR_NOT_FOUND = "Provided path is not a valid directory"
    PATH_ESCAPE = "Path outside of archive root"
    UPLOAD_FAILURE = "Failed to upload artifact"
    SERVICE_ERROR = "Code review service error"
    CREDENTIALS_ERROR = "Failed to initialize AWS API"
    BAD_BUCKET_NAME = "Bucket names must start with codeguru-reviewer-"
    USER_ABORT = "Abort"


class ReviewerError(Exception):
    """Base class for every failure the pipeline reports to the user."""

    code: ErrorCode = ErrorCode.SERVICE_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        if not self.message:
            return self.code.value
        return f"{self.code.value}: {self.message}"


class InvalidRepository(ReviewerError):
    code = ErrorCode.INVALID_REPOSITORY


class InvalidRevision(ReviewerError):
    code = ErrorCode.INVALID_REVISION


class EmptyChangeSet(ReviewerError):
    code = ErrorCode.EMPTY_CHANGE_SET


class EmptySelection(ReviewerError):
    code = ErrorCode.EMPTY_SELECTION


class BuildDirNotFound(ReviewerError):
    code = ErrorCode.BUILD_DIR_NOT_FOUND


class DirectoryNotFound(ReviewerError):
    code = ErrorCode.DIR_NOT_FOUND


class PathEscape(ReviewerError):
    code = ErrorCode.PATH_ESCAPE


class UploadFailure(ReviewerError):
    code = ErrorCode.UPLOAD_FAILURE


class ServiceError(ReviewerError):
    code = ErrorCode.SERVICE_ERROR


class CredentialsError(ReviewerError):
    code = ErrorCode.CREDENTIALS_ERROR


class BadBucketName(ReviewerError):
    code = ErrorCode.BAD_BUCKET_NAME
