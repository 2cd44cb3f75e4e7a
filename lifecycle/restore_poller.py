# lifecycle/restore_poller.py
from __future__ import annotations

from domain.operations.states import OperationType, SubjectKind
from domain.operations.subject import RestoreDetails, Subject
from lifecycle.agent_operation import AgentOperationPoller


class RestoreStatusPoller(AgentOperationPoller):
    # Restores are never requeued automatically.
    kind = SubjectKind.RESTORE.value
    operation = OperationType.RESTORE.value

    def parse_details(self, subject: Subject) -> RestoreDetails:
        return RestoreDetails.from_subject(subject)
