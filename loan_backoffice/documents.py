"""
KYC Documents Module

Typed view of the KYC documents attached to a loan application. Documents
live in the application's user_data blob under "kyc_docs" as a list of
{document_type, url, uploaded_at, verified, verified_at, verified_by} records.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .models import parse_datetime, serialize_value

KYC_DOCS_KEY = "kyc_docs"

REQUIRED_DOCUMENTS = ("id_card_front", "bank_statements", "employment_letter")


@dataclass(frozen=True)
class KycDocument:
    """Single uploaded KYC document"""
    document_type: str
    url: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    verified: bool = False
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_type": self.document_type,
            "url": self.url,
            "uploaded_at": serialize_value(self.uploaded_at),
            "verified": self.verified,
            "verified_at": serialize_value(self.verified_at),
            "verified_by": self.verified_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KycDocument':
        document_type = data.get("document_type")
        if not document_type:
            raise ValidationError("KYC document is missing its document_type")
        return cls(
            document_type=document_type,
            url=data.get("url") or data.get("file_url"),
            uploaded_at=parse_datetime(data.get("uploaded_at")),
            verified=bool(data.get("verified", False)),
            verified_at=parse_datetime(data.get("verified_at")),
            verified_by=data.get("verified_by"),
        )


def documents_from_user_data(user_data: Dict[str, Any]) -> List[KycDocument]:
    """Read the typed document list out of an application's user_data"""
    return [KycDocument.from_dict(doc) for doc in user_data.get(KYC_DOCS_KEY) or []]


def with_documents(user_data: Dict[str, Any], documents: List[KycDocument]) -> Dict[str, Any]:
    """Copy of user_data with the document list replaced"""
    result = dict(user_data)
    result[KYC_DOCS_KEY] = [doc.to_dict() for doc in documents]
    return result


def set_verification(
    documents: List[KycDocument],
    document_type: str,
    verified: bool = True,
    actor: Optional[str] = None,
    now: Optional[datetime] = None
) -> List[KycDocument]:
    """Mark one document verified (or unverified)"""
    if not document_type:
        raise ValidationError("Document type is required")
    if not any(doc.document_type == document_type for doc in documents):
        raise NotFoundError("kyc_document", document_type)

    now = now or datetime.now(timezone.utc)
    return [
        replace(
            doc,
            verified=verified,
            verified_at=now if verified else None,
            verified_by=actor if verified else None,
        ) if doc.document_type == document_type else doc
        for doc in documents
    ]


def missing_required_documents(documents: List[KycDocument]) -> List[str]:
    """Required document types that are absent or not yet verified"""
    verified = {doc.document_type for doc in documents if doc.verified}
    return [doc_type for doc_type in REQUIRED_DOCUMENTS if doc_type not in verified]
