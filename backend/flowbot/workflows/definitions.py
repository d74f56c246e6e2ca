# /flowbot/workflows/definitions.py

"""
Node type tags understood by the flow engine.

This module is pure data (no logic). The tags are a stable contract with the
visual flow builder: flows saved by the builder reference nodes by these
strings. Executors for other tags may still be registered at runtime.
"""

from typing import FrozenSet

# WhatsApp communication
MESSAGE = "message"
ENHANCED_MESSAGE = "enhancedMessage"
TYPING = "typing"
BUTTONS = "buttons"
SURVEY = "survey"
LOCATION = "location"
INTERACTIVE = "interactive"
LIST = "list"

# Logic and control
CONDITION = "condition"
SMART_CONDITION = "smartCondition"
ADVANCED_CONDITION = "advancedCondition"
TIMEOUT = "timeout"

# Data and CRM
DATABASE = "database"
CUSTOMER_STAGE = "customerStage"
TAG = "tag"
ASSIGNMENT = "assignment"

# AI and automation
AI_RESPONSE = "aiResponse"
RECOGNITION = "recognition"
FORMATTER = "formatter"

# Integrations
WEBHOOK = "webhook"
HTTP_REQUEST = "httpRequest"
HUBSPOT = "hubspot"
META_CONVERSIONS = "metaConversions"

# Specialised
WHATSAPP_FLOW = "whatsappFlow"
SMARTON = "smarton"

KNOWN_NODE_TYPES: FrozenSet[str] = frozenset({
    MESSAGE, ENHANCED_MESSAGE, TYPING, BUTTONS, SURVEY, LOCATION,
    CONDITION, SMART_CONDITION, ADVANCED_CONDITION, TIMEOUT,
    DATABASE, CUSTOMER_STAGE, TAG, ASSIGNMENT,
    AI_RESPONSE, RECOGNITION, FORMATTER,
    WEBHOOK, HTTP_REQUEST, HUBSPOT, META_CONVERSIONS,
    WHATSAPP_FLOW, SMARTON,
})

# Node types that talk to the user and expect a reply. Once the inbound message
# of a call has been consumed, auto-chaining stops in front of these nodes.
INPUT_REQUIRED_NODE_TYPES: FrozenSet[str] = frozenset({
    MESSAGE, ENHANCED_MESSAGE, BUTTONS, SURVEY, LOCATION, INTERACTIVE, LIST,
})


def requires_user_input(node_type: str) -> bool:
    return node_type in INPUT_REQUIRED_NODE_TYPES
