# /flowbot/services/conversation_service.py

import logging
from typing import Any, Optional

from flowbot.config.settings import settings
from flowbot.models.conversation import ConversationThread
from flowbot.workflows.engine import FlowEngine
from flowbot.workflows.exceptions import ThreadNotActive

logger = logging.getLogger(__name__)


class ConversationService:
    """
    Routes inbound WhatsApp messages into the engine.

    A message from an address with an active thread continues that thread;
    otherwise a new conversation is started on the default flow, when one is
    configured.
    """

    def __init__(self, engine: FlowEngine, default_flow_id: Optional[str] = None):
        self.engine = engine
        self.default_flow_id = default_flow_id if default_flow_id is not None else settings.default_flow_id

    async def handle_inbound(
        self,
        address: str,
        message: str,
        user_input: Any = None,
        profile_name: Optional[str] = None,
    ) -> Optional[ConversationThread]:
        thread = await self.engine.find_active_thread(address)
        if thread is not None:
            try:
                return await self.engine.process_user_message(thread.id, message, user_input)
            except ThreadNotActive:
                # Finished while this message was queued behind the lock.
                logger.info(f"Thread {thread.id} closed before message from {address} was processed")

        if not self.default_flow_id:
            logger.info(f"No active thread for {address} and no default flow configured; message ignored")
            return None

        initial_variables = {"lastMessage": message}
        if profile_name:
            initial_variables["name"] = profile_name
        return await self.engine.start_conversation(
            user_id=address,
            address=address,
            flow_id=self.default_flow_id,
            initial_variables=initial_variables,
        )
