# /flowbot/executors/catalog.py

import logging
from typing import Optional

from flowbot.executors.condition import AdvancedConditionExecutor, ConditionExecutor
from flowbot.executors.database import DatabaseExecutor, HubSpotDatabaseExecutor
from flowbot.executors.interactive import (
    ButtonsExecutor,
    LocationExecutor,
    SurveyExecutor,
    WhatsAppFlowExecutor,
)
from flowbot.executors.message import EnhancedMessageExecutor, MessageExecutor
from flowbot.executors.utility import (
    AIResponseExecutor,
    AssignmentExecutor,
    CustomerStageExecutor,
    FormatterExecutor,
    MetaConversionsExecutor,
    RecognitionExecutor,
    SmartonExecutor,
    TagExecutor,
    TimeoutExecutor,
    TypingExecutor,
)
from flowbot.executors.webhook import WebhookExecutor
from flowbot.services.ports import (
    ConditionClassifier,
    CrmClient,
    HttpClient,
    MessageSender,
    QueryExecutor,
    ResponseGenerator,
)
from flowbot.workflows import definitions as node_types
from flowbot.workflows.engine import FlowEngine

logger = logging.getLogger(__name__)


def register_all_executors(
    engine: FlowEngine,
    sender: MessageSender,
    http_client: HttpClient,
    query_executor: QueryExecutor,
    crm: CrmClient,
    classifier: Optional[ConditionClassifier] = None,
    responder: Optional[ResponseGenerator] = None,
    webhook_wait=None,
):
    """Binds every built-in node type tag to an executor wired with the given adapters."""
    condition = ConditionExecutor(classifier)
    webhook = WebhookExecutor(http_client, wait=webhook_wait)

    executors = {
        node_types.MESSAGE: MessageExecutor(sender),
        node_types.ENHANCED_MESSAGE: EnhancedMessageExecutor(sender),
        node_types.TYPING: TypingExecutor(),
        node_types.BUTTONS: ButtonsExecutor(sender),
        node_types.SURVEY: SurveyExecutor(sender),
        node_types.LOCATION: LocationExecutor(sender),
        node_types.CONDITION: condition,
        node_types.SMART_CONDITION: condition,
        node_types.ADVANCED_CONDITION: AdvancedConditionExecutor(classifier),
        node_types.TIMEOUT: TimeoutExecutor(),
        node_types.DATABASE: DatabaseExecutor(query_executor),
        node_types.CUSTOMER_STAGE: CustomerStageExecutor(),
        node_types.TAG: TagExecutor(),
        node_types.ASSIGNMENT: AssignmentExecutor(),
        node_types.AI_RESPONSE: AIResponseExecutor(responder, sender),
        node_types.RECOGNITION: RecognitionExecutor(),
        node_types.FORMATTER: FormatterExecutor(),
        node_types.WEBHOOK: webhook,
        node_types.HTTP_REQUEST: webhook,
        node_types.HUBSPOT: HubSpotDatabaseExecutor(crm, query_executor),
        node_types.META_CONVERSIONS: MetaConversionsExecutor(http_client),
        node_types.WHATSAPP_FLOW: WhatsAppFlowExecutor(sender),
        node_types.SMARTON: SmartonExecutor(),
    }
    for node_type, executor in executors.items():
        engine.register_node_executor(node_type, executor)

    logger.info(f"Registered {len(executors)} node executors")
