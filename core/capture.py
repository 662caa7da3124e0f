"""
Capture sequences — record a participant's button clicks between a node
flagged as capture start and one flagged as capture end, then persist
the sequence as CapturedData.
"""
from __future__ import annotations

import structlog
from typing import Optional

from context.tracker import ConversationTracker
from core.run import ExecutionRun
from database.store_base import BaseWorkflowStore
from models.graph import Node
from models.schemas import CapturedClick, CapturedData

logger = structlog.get_logger()


class CaptureRecorder:

    def __init__(self, store: BaseWorkflowStore):
        self.store = store

    async def record_reply(self, run: ExecutionRun, source: Optional[Node]) -> Optional[CapturedData]:
        """Append the reply to the open sequence; flush it when source ends the sequence."""
        capture = run.state.context.capture_state
        if capture is None or source is None:
            return None

        click = CapturedClick(
            button_id=run.event.reply_id,
            button_title=run.event.reply_title or source.reply_title(run.event.reply_id),
            node_id=source.id,
            timestamp=run.event.timestamp,
        )
        capture = capture.model_copy(update={"clicks": [*capture.clicks, click]})

        flags = source.capture
        if flags is None or not flags.is_capture_end:
            ConversationTracker.replace_capture_state(run.state, capture)
            return None

        data = CapturedData(
            workflow_id=run.workflow.id,
            workflow_name=run.workflow.name,
            sequence_name=capture.sequence_name,
            phone=run.phone,
            clicks=capture.clicks,
        )
        await self.store.save_captured_data(data)
        ConversationTracker.replace_capture_state(run.state, None)
        logger.info("capture_completed", workflow_id=run.workflow.id,
                    sequence=data.sequence_name, clicks=len(data.clicks))
        return data
