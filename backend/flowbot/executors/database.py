# /flowbot/executors/database.py

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from flowbot.models.execution import NodeExecutionContext, NodeExecutionResult
from flowbot.services.ports import CrmClient, QueryExecutor
from flowbot.utils.metrics import crm_operations_counter, database_operations_counter

logger = logging.getLogger(__name__)

CRUD_OPERATIONS = ("select", "insert", "update", "delete")


class DatabaseExecutor:
    """
    Generic CRUD against the injected QueryExecutor.

    Condition values written as "{name}" or "{{name}}" are read from the thread
    variables first; anything that resolves to None is left out of the
    predicate map instead of being compared against.
    """

    def __init__(self, query_executor: QueryExecutor):
        self.query_executor = query_executor

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        operation = data.get("operation")
        table = data.get("table")

        if operation not in CRUD_OPERATIONS:
            return NodeExecutionResult.failure(f"Unsupported database operation: {operation}")
        if not table:
            return NodeExecutionResult.failure("Database node has no table configured")

        try:
            result = await self.run_operation(operation, table, data, context)
        except ValueError as e:
            database_operations_counter.labels(operation=operation, status="rejected").inc()
            return NodeExecutionResult.failure(str(e))
        except Exception as e:
            logger.error(f"Database {operation} on '{table}' failed: {e}", exc_info=True)
            database_operations_counter.labels(operation=operation, status="error").inc()
            return NodeExecutionResult.failure(f"Database {operation} failed: {e}")

        database_operations_counter.labels(operation=operation, status="success").inc()
        context.log({
            "operation": operation,
            "table": table,
            "rowsAffected": self._rows_affected(result),
        })
        return self._success(context, {
            "operation": operation,
            "table": table,
            "result": result,
            "timestamp": datetime.utcnow().isoformat(),
        }, result)

    async def run_operation(self, operation: str, table: str, data: Dict[str, Any], context: NodeExecutionContext) -> Any:
        if operation == "select":
            predicates = self.resolve_conditions(data.get("conditions"), context)
            return await self.query_executor.select(table, predicates)

        if operation == "insert":
            return await self.query_executor.insert(table, self.collect_fields(data, context))

        predicates = self.resolve_conditions(data.get("conditions"), context)
        if not predicates:
            raise ValueError(f"Refusing to {operation} every row of '{table}': no resolved conditions")
        if operation == "update":
            affected = await self.query_executor.update(table, predicates, self.collect_fields(data, context))
        else:
            affected = await self.query_executor.delete(table, predicates)
        return {"rowsAffected": affected}

    def resolve_conditions(self, conditions: Optional[Dict[str, Any]], context: NodeExecutionContext) -> Dict[str, Any]:
        resolved = {}
        for key, value in (conditions or {}).items():
            if isinstance(value, str) and value.startswith("{") and value.endswith("}"):
                value = context.get_variable(value.strip("{}").strip())
            if value is not None:
                resolved[key] = value
        return resolved

    def collect_fields(self, data: Dict[str, Any], context: NodeExecutionContext) -> Dict[str, Any]:
        record = {}
        for field in data.get("fields") or []:
            value = context.get_variable(field)
            if value is not None:
                record[field] = value
        record["updated_at"] = datetime.utcnow().isoformat()
        record["thread_id"] = context.thread_id
        return record

    def _success(self, context: NodeExecutionContext, output: Dict[str, Any], result: Any) -> NodeExecutionResult:
        output_variable = context.config.get("outputVariable")
        patch = None
        if output_variable and result is not None:
            context.set_variable(output_variable, result)
            patch = {output_variable: result}
        return NodeExecutionResult(success=True, output=output, variables=patch)

    @staticmethod
    def _rows_affected(result: Any) -> int:
        if isinstance(result, list):
            return len(result)
        if isinstance(result, dict) and "rowsAffected" in result:
            return result["rowsAffected"]
        return 1 if result else 0


class HubSpotDatabaseExecutor(DatabaseExecutor):
    """
    CRM pseudo-operations on top of the generic executor.

    create_contact, update_contact, create_deal and get_contact map thread
    variables onto HubSpot records; the CRM result is mirrored into the node's
    local table when one is configured. Plain CRUD operations fall through to
    DatabaseExecutor.
    """

    CRM_OPERATIONS = ("create_contact", "update_contact", "create_deal", "get_contact")

    def __init__(self, crm: CrmClient, query_executor: QueryExecutor):
        super().__init__(query_executor)
        self.crm = crm

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        operation = context.config.get("operation")
        if operation not in self.CRM_OPERATIONS:
            return await super().execute(context)

        try:
            if operation == "create_contact":
                result = await self.create_contact(context)
            elif operation == "update_contact":
                result = await self.update_contact(context)
            elif operation == "create_deal":
                result = await self.create_deal(context)
            else:
                result = await self.get_contact(context)
        except Exception as e:
            logger.error(f"HubSpot {operation} failed: {e}", exc_info=True)
            crm_operations_counter.labels(operation=operation, status="error").inc()
            return NodeExecutionResult.failure(f"HubSpot {operation} failed: {e}")

        crm_operations_counter.labels(operation=operation, status="success").inc()
        await self._mirror(context, operation, result)
        context.log({"hubspotOperation": operation, "recordId": result.get("id")})
        return self._success(context, {
            "hubspotOperation": operation,
            "result": result,
            "timestamp": datetime.utcnow().isoformat(),
        }, result)

    async def create_contact(self, context: NodeExecutionContext) -> Dict[str, Any]:
        properties = self._drop_empty({
            "email": context.get_variable("email") or context.get_variable("userEmail"),
            "firstname": context.get_variable("firstName") or context.get_variable("nombre") or context.get_variable("name"),
            "lastname": context.get_variable("lastName") or context.get_variable("apellido"),
            "phone": context.get_variable("phoneNumber"),
            "lifecyclestage": "lead",
            "whatsapp_thread_id": context.thread_id,
        })
        contact = await self.crm.create_contact(properties)
        if contact.get("id"):
            context.set_variable("hubspotContactId", contact["id"])
        return contact

    async def update_contact(self, context: NodeExecutionContext) -> Dict[str, Any]:
        contact_id = context.get_variable("hubspotContactId")
        if not contact_id:
            raise ValueError("No hubspotContactId in thread variables")
        properties = self.collect_fields(context.config, context)
        properties.pop("updated_at", None)
        properties["whatsapp_thread_id"] = properties.pop("thread_id")
        return await self.crm.update_contact(str(contact_id), properties)

    async def create_deal(self, context: NodeExecutionContext) -> Dict[str, Any]:
        properties = {
            "dealname": context.get_variable("dealName") or "Deal desde WhatsApp",
            "amount": context.get_variable("amount") or 0,
            "dealstage": context.get_variable("dealStage") or "qualifiedtobuy",
            "pipeline": context.get_variable("pipeline") or "default",
            "whatsapp_thread_id": context.thread_id,
            "source": "WhatsApp Bot",
        }
        return await self.crm.create_deal(properties)

    async def get_contact(self, context: NodeExecutionContext) -> Dict[str, Any]:
        email = context.get_variable("email") or context.get_variable("userEmail")
        if not email:
            raise ValueError("No email or userEmail in thread variables")
        contact = await self.crm.find_contact_by_email(email)
        if contact is None:
            return {"email": email, "found": False}
        if contact.get("id"):
            context.set_variable("hubspotContactId", contact["id"])
        return {**contact, "found": True}

    async def _mirror(self, context: NodeExecutionContext, operation: str, result: Dict[str, Any]):
        table = context.config.get("table")
        if not table or not result.get("id"):
            return
        record = {
            "hubspot_id": result["id"],
            "hubspot_operation": operation,
            "thread_id": context.thread_id,
            "synced_at": datetime.utcnow().isoformat(),
        }
        try:
            await self.query_executor.insert(table, record)
        except Exception as e:
            logger.warning(f"Could not mirror HubSpot {operation} into '{table}': {e}")

    @staticmethod
    def _drop_empty(properties: Dict[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in properties.items() if value is not None}
