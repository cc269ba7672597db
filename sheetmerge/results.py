# sheetmerge/results.py

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence


RECORD_ID_FIELD = "Record ID"
LAST_USER_ID_FIELD = "Last User(id)"


@dataclass(frozen=True)
class MergeArtifact:
    template_id: str
    file_path: str
    record_ids: List[str]
    user_id: Optional[str]
    record_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_id": self.template_id,
            "file_path": self.file_path,
            "record_ids": list(self.record_ids),
            "user_id": self.user_id,
            "record_count": self.record_count,
        }


@dataclass
class GroupOutcome:
    """What happened to one template group during a job."""

    template_id: str
    status: str  # merged | uploaded | failed | cancelled
    artifact: Optional[MergeArtifact] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status in ("failed", "cancelled")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_id": self.template_id,
            "status": self.status,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class JobResult:
    """
    Single completion value of a merge job.

    status is "success" when every group made it through (or there was
    nothing to merge), "partial" when some groups failed and others did not,
    and "failed" when nothing succeeded.
    """

    status: str
    message: str
    outcomes: List[GroupOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "groups": [o.to_dict() for o in self.outcomes],
        }


# ============================================================
# aggregation
# ============================================================

def record_ids_of(records: Sequence[Dict[str, Any]]) -> List[str]:
    ids = []
    for record in records:
        record_id = record.get(RECORD_ID_FIELD)
        if record_id:
            ids.append(str(record_id))
    return ids


def last_updated_user(records: Sequence[Dict[str, Any]]) -> Optional[str]:
    """
    The user who last updated the group's first record.

    Only the first record is consulted, not the most recent update across
    the group.
    """
    if not records:
        return None
    user_id = records[0].get(LAST_USER_ID_FIELD)
    return str(user_id) if user_id not in (None, "") else None


def aggregate(
    template_id: str,
    file_path: str,
    records: Sequence[Dict[str, Any]],
) -> MergeArtifact:
    return MergeArtifact(
        template_id=str(template_id),
        file_path=str(file_path),
        record_ids=record_ids_of(records),
        user_id=last_updated_user(records),
        record_count=len(records),
    )


def merge_details(artifact: MergeArtifact) -> str:
    """Text stored in the merged document's details field."""
    ids = "\n".join(artifact.record_ids)
    return f"Merged {artifact.record_count} records:\n{ids}"


def merged_doc_fields(artifact: MergeArtifact, merged_doc_table) -> Dict[str, Any]:
    """
    Field values for the new merged document record.

    Each field is set only when its name is configured; the merge user is
    set only when the group has one.
    """
    fields: Dict[str, Any] = {}

    if merged_doc_table.merged_doc_details_field_name:
        fields[merged_doc_table.merged_doc_details_field_name] = merge_details(artifact)

    if merged_doc_table.merged_doc_to_template_relationship_field_name:
        fields[merged_doc_table.merged_doc_to_template_relationship_field_name] = artifact.template_id

    if merged_doc_table.merge_user_field_name and artifact.user_id:
        fields[merged_doc_table.merge_user_field_name] = artifact.user_id

    return fields


def summarize(outcomes: Sequence[GroupOutcome]) -> JobResult:
    """Fold per-group outcomes into the job's completion value."""
    outcomes = list(outcomes)
    failed = [o for o in outcomes if o.failed]

    if not outcomes:
        return JobResult("success", "No records to merge", outcomes)
    if not failed:
        return JobResult("success", "Merge completed successfully", outcomes)

    done = len(outcomes) - len(failed)
    failed_ids = ", ".join(o.template_id for o in failed)
    if done:
        return JobResult(
            "partial",
            f"Merged {done} of {len(outcomes)} templates; failed: {failed_ids}",
            outcomes,
        )
    return JobResult("failed", f"All templates failed: {failed_ids}", outcomes)
