# /flowbot/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics used by the flow engine and its integrations.

# Engine Metrics
node_executions_counter = Counter('flow_node_executions_total', 'Node executions', ['node_type', 'status'])
node_execution_histogram = Histogram('flow_node_execution_seconds', 'Node execution time in seconds', ['node_type'])
conversations_started_counter = Counter('flow_conversations_started_total', 'Conversations started', ['flow_id'])
thread_transitions_counter = Counter('flow_thread_transitions_total', 'Thread status transitions', ['status'])

# Integration Metrics
message_counter = Counter('whatsapp_messages_total', 'Outbound WhatsApp messages', ['status', 'message_type'])
webhook_calls_counter = Counter('flow_webhook_calls_total', 'Webhook node HTTP calls', ['status'])
crm_operations_counter = Counter('crm_operations_total', 'CRM operations', ['operation', 'status'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
ai_requests_counter = Counter('ai_requests_total', 'Total AI requests', ['model', 'status'])

# Performance Metrics
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
