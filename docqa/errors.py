from typing import Optional


class DocQAError(Exception):
    """Base error carrying a machine-readable code and the HTTP status it maps to."""

    code = "DOCQA_ERROR"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(DocQAError):
    """Bad input (file type, file size, empty or oversized text). Never retried."""
    code = "VALIDATION_ERROR"
    status_code = 400


class QuotaExceededError(DocQAError):
    code = "QUOTA_EXCEEDED"
    status_code = 429

    def __init__(self, message: str = "PDF upload quota exceeded"):
        super().__init__(message)


class ExtractionError(DocQAError):
    code = "PDF_PARSING_ERROR"
    status_code = 422


class InvalidPdfFormat(ExtractionError):
    code = "INVALID_PDF_FORMAT"


class ExtractionFailed(ExtractionError):
    code = "EXTRACTION_FAILED"


class EmbeddingError(DocQAError):
    code = "EMBEDDING_ERROR"
    status_code = 502


class VectorIndexError(DocQAError):
    code = "VECTOR_STORE_ERROR"
    status_code = 500


class NotFoundError(DocQAError):
    code = "DOCUMENT_NOT_FOUND"
    status_code = 404

    def __init__(self, message: str = "Document not found"):
        super().__init__(message)


class LLMConfigurationError(DocQAError):
    """LLM is not configured (missing API key etc.)"""
    code = "LLM_CONFIG_ERROR"
    status_code = 502


class LLMServiceError(DocQAError):
    """Upstream LLM call failed"""
    code = "LLM_SERVICE_ERROR"
    status_code = 502


class StorageError(DocQAError):
    """Raw file could not be written to or removed from the object store."""
    code = "STORAGE_ERROR"
    status_code = 502


class ProviderError(Exception):
    """A remote provider call failed; status_code is None for transport failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500