"""
Approval Queue

Gated actions (large rebalance moves, passed DAO proposals) are enqueued
here. This core only enqueues and reads; reviewers own status transitions.
"""
import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...errors import NotFoundError
from ...models.db_models import ApprovalDB, ApprovalStatus


logger = logging.getLogger(__name__)


class ApprovalQueue:

    def __init__(self, db: Session):
        self.db = db

    def enqueue(
        self,
        action: str,
        payload: Dict[str, Any],
        division: Optional[str] = None,
        requester: Optional[str] = None,
    ) -> ApprovalDB:
        approval = ApprovalDB(
            id=str(uuid4()),
            action=action,
            division=division,
            payload=payload,
            status=ApprovalStatus.PENDING,
            requester=requester,
        )
        self.db.add(approval)
        self.db.flush()
        logger.info(f"Enqueued approval {approval.id} for {action}")
        return approval

    def get(self, approval_id: str) -> ApprovalDB:
        approval = self.db.query(ApprovalDB).filter(ApprovalDB.id == approval_id).first()
        if not approval:
            raise NotFoundError(f"Approval not found: {approval_id}")
        return approval

    def is_approved(self, approval_id: Optional[str]) -> bool:
        if not approval_id:
            return False
        return self.get(approval_id).status == ApprovalStatus.APPROVED
