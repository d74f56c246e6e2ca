# /flowbot/executors/webhook.py

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict

import tenacity

from flowbot.config.settings import settings
from flowbot.models.execution import NodeExecutionContext, NodeExecutionResult
from flowbot.services.ports import HttpClient, HttpResponse, TransportError
from flowbot.utils.metrics import webhook_calls_counter
from flowbot.utils.templating import render_mapping, render_template, render_value, to_text

logger = logging.getLogger(__name__)


class WebhookExecutor:
    """
    Calls an external HTTP endpoint with the thread's variables rendered into
    the URL, every header value and the body.

    Timeouts and network errors are retried `retries` times and then reported
    as a failed result with status 0; they never raise.
    """

    def __init__(self, http_client: HttpClient, wait=None):
        self.http_client = http_client
        self.wait = wait or tenacity.wait_exponential(
            multiplier=1, min=settings.webhook_retry_min_wait, max=settings.webhook_retry_max_wait
        )

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        data = context.config
        variables = context.variables

        url = render_template(to_text(data.get("url")), variables)
        if not url:
            return NodeExecutionResult.failure("Webhook node has no URL configured")
        method = str(data.get("method") or "POST").upper()
        headers = {key: to_text(value) for key, value in render_mapping(data.get("headers"), variables).items()}
        if not any(key.lower() == "content-type" for key in headers):
            headers["Content-Type"] = "application/json"
        body = render_value(data.get("body"), variables) if data.get("body") is not None else None
        timeout_ms = data.get("timeout") or settings.webhook_default_timeout_ms
        retries = max(int(data.get("retries") or 0), 0)

        started = time.perf_counter()
        try:
            response = await self._call(method, url, headers, body, float(timeout_ms) / 1000, retries)
        except (TransportError, asyncio.TimeoutError) as e:
            elapsed = int((time.perf_counter() - started) * 1000)
            error = str(e) or f"Request timed out after {timeout_ms}ms"
            logger.error(f"Webhook {method} {url} failed after {retries + 1} attempt(s): {error}")
            webhook_calls_counter.labels(status="transport_error").inc()
            return NodeExecutionResult(
                success=False,
                output={
                    "status": 0,
                    "statusText": "Network Error",
                    "data": None,
                    "headers": {},
                    "responseTime": elapsed,
                    "timestamp": datetime.utcnow().isoformat(),
                },
                error=error,
            )

        elapsed = int((time.perf_counter() - started) * 1000)
        success = 200 <= response.status < 300
        webhook_calls_counter.labels(status="success" if success else "http_error").inc()
        context.log({"method": method, "url": url, "status": response.status, "responseTime": elapsed})

        output_variable = data.get("outputVariable")
        patch = None
        if output_variable and response.data is not None:
            context.set_variable(output_variable, response.data)
            patch = {output_variable: response.data}

        return NodeExecutionResult(
            success=success,
            output={
                "status": response.status,
                "statusText": response.status_text,
                "data": response.data,
                "headers": response.headers,
                "responseTime": elapsed,
                "timestamp": datetime.utcnow().isoformat(),
            },
            next_node_id=data.get("nextNodeId") if success else None,
            error=None if success else f"HTTP {response.status}: {response.status_text}",
            variables=patch,
        )

    async def _call(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout: float,
        retries: int,
    ) -> HttpResponse:
        retrying = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type((TransportError, asyncio.TimeoutError)),
            stop=tenacity.stop_after_attempt(retries + 1),
            wait=self.wait,
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await asyncio.wait_for(
                    self.http_client.request(method, url, headers=headers, body=body, timeout=timeout),
                    timeout=timeout,
                )
