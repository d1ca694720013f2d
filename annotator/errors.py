"""
Annotation Error Types

Exceptions raised by the annotation engine. Validation errors are raised
before any persistence call is made; persistence errors wrap failures of the
backing service; stale-range errors never leave the compositor.
"""


class AnnotationError(Exception):
    """Base class for annotation engine errors"""


class ValidationError(AnnotationError, ValueError):
    """Selection or annotation data rejected before reaching the store backend"""


class DuplicateSubmissionError(ValidationError):
    """The same action is already in flight"""

    def __init__(self, action: str):
        super().__init__(f"Action already in progress: {action}")
        self.action = action


class PersistenceError(AnnotationError):
    """A create/update/delete/fetch against the persistence backend failed"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class StaleRangeError(AnnotationError):
    """Annotation offsets fall outside the content they are applied to"""

    def __init__(self, annotation_id, start: int, end: int, length: int):
        super().__init__(
            f"Annotation {annotation_id} range [{start}, {end}) "
            f"is empty within content of length {length}"
        )
        self.annotation_id = annotation_id
        self.start = start
        self.end = end
        self.length = length
