from voice_router.privacy.redaction import (
    PERSONAL_FIELDS,
    PiiCategory,
    RedactionResult,
    Redactor,
)

__all__ = ["Redactor", "RedactionResult", "PiiCategory", "PERSONAL_FIELDS"]
