"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate. The order of imports matters for foreign
key resolution.
"""

from dsr_engine.models.subject import BusinessRow, CustomerRow, ObjectionRow, ReviewRequestRow
from dsr_engine.models.request import DataSubjectRequestRow, WorkflowTransitionRow
from dsr_engine.models.verification import IdentityVerificationRow
from dsr_engine.models.retention import ArchivalJobRow, RetentionPolicyRow
from dsr_engine.models.deletion import DeletionCertificateRow, DeletionRequestRow
from dsr_engine.models.audit import ComplianceAuditEventRow
from dsr_engine.models.encryption_key import EncryptionKeyRow

__all__ = [
    "BusinessRow",
    "CustomerRow",
    "ReviewRequestRow",
    "ObjectionRow",
    "DataSubjectRequestRow",
    "WorkflowTransitionRow",
    "IdentityVerificationRow",
    "RetentionPolicyRow",
    "ArchivalJobRow",
    "DeletionRequestRow",
    "DeletionCertificateRow",
    "ComplianceAuditEventRow",
    "EncryptionKeyRow",
]
