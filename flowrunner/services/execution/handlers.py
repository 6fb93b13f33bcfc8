"""Node handlers for task (non control-flow) node types.

A single NodeHandlers instance is bound to one mode: in sandbox mode
side-effecting nodes return simulated results and the API client is never
touched; in live mode they delegate to the API client. Handlers take the
current variable bag and return a NodeResult whose ``variables`` patch is
merged back by the caller.
"""

import asyncio
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import jmespath
from jmespath.exceptions import JMESPathError
from jsonpath_ng.exceptions import JSONPathError
from jsonpath_ng.ext import parse as parse_jsonpath

from flowrunner.constants import DEFAULT_TRANSFORM_OUTPUT, DELAY_UNITS_MS
from flowrunner.core.config import Settings
from flowrunner.core.logging import get_logger
from flowrunner.models.flow import FlowNode
from flowrunner.services.api_client import ApiClient
from flowrunner.services.execution.exceptions import ExpressionError, NodeExecutionError
from flowrunner.services.execution.expressions import evaluate_expression, render_template
from flowrunner.services.scheduler import next_fire_time

logger = get_logger(__name__)


@dataclass
class NodeResult:
    """Handler output: the recorded result plus variables to merge."""
    data: Any = None
    variables: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "variables": self.variables}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "NodeResult":
        return cls(data=payload.get("data"), variables=dict(payload.get("variables") or {}))


def delay_duration_ms(config: Dict[str, Any]) -> int:
    """Convert a delay node's ``duration`` + ``unit`` into milliseconds."""
    unit = config.get("unit") or "ms"
    if unit not in DELAY_UNITS_MS:
        raise ValueError(f"Unknown delay unit '{unit}'")
    return int(float(config.get("duration", 0)) * DELAY_UNITS_MS[unit])


def _variable_suffix(name: str) -> str:
    return re.sub(r"\W+", "_", name).strip("_") or "unknown"


def _build_auth(auth: Optional[Dict[str, Any]], headers: Dict[str, str]) -> Optional[httpx.Auth]:
    """Apply bearer auth to headers, or return basic auth for the client."""
    if not auth:
        return None
    auth_type = auth.get("type")
    if auth_type == "bearer":
        headers["Authorization"] = f"Bearer {auth.get('token', '')}"
    elif auth_type == "basic":
        return httpx.BasicAuth(auth.get("username", ""), auth.get("password", ""))
    return None


def sign_payload(secret: str, body: str) -> str:
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class NodeHandlers:
    """Registry of node handlers for one execution mode."""

    def __init__(
        self,
        settings: Settings,
        api_client: Optional[ApiClient] = None,
        sandbox: bool = True,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.api_client = api_client
        self.sandbox = sandbox
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._handlers: Dict[str, Callable[[FlowNode, Dict[str, Any]], Awaitable[NodeResult]]] = {
            'http': self._handle_http,
            'transform': self._handle_transform,
            'delay': self._handle_delay,
            'call': self._handle_call,
            'webhook': self._handle_webhook,
            'schedule': self._handle_schedule,
        }

    def supports(self, node_type: str) -> bool:
        return node_type in self._handlers

    def bind(self, node: FlowNode, variables: Dict[str, Any]) -> Callable[[], Awaitable[NodeResult]]:
        """Zero-arg operation for the retry executor."""
        return partial(self.execute, node, variables)

    async def execute(self, node: FlowNode, variables: Dict[str, Any]) -> NodeResult:
        """Run one node.

        Raises:
            NodeExecutionError: on any handler failure, including bad
                expressions and unsupported node types.
        """
        handler = self._handlers.get(node.type)
        if handler is None:
            raise NodeExecutionError(node.id, f"Unsupported node type: {node.type}")

        try:
            return await handler(node, variables)
        except NodeExecutionError:
            raise
        except ExpressionError as e:
            raise NodeExecutionError(node.id, str(e)) from e
        except Exception as e:
            logger.error("Node handler crashed", node_id=node.id, node_type=node.type, error=str(e))
            raise NodeExecutionError(node.id, f"{type(e).__name__}: {e}") from e

    def _require_api_client(self, node: FlowNode) -> ApiClient:
        if self.api_client is None:
            raise NodeExecutionError(node.id, "API client is not configured for live execution")
        return self.api_client

    # =========================================================================
    # Side-effecting nodes
    # =========================================================================

    async def _handle_http(self, node: FlowNode, variables: Dict[str, Any]) -> NodeResult:
        config = render_template(node.config, variables)
        method = str(config.get("method") or "GET").upper()
        url = config.get("url")
        if not url:
            raise NodeExecutionError(node.id, "HTTP node has no URL")

        if self.sandbox:
            data = {"url": url, "method": method, "status": 200, "body": {"ok": True, "sandbox": True}}
        else:
            client = self._require_api_client(node)
            headers = dict(config.get("headers") or {})
            auth = _build_auth(config.get("auth"), headers)
            result = await client.execute_api_call(
                method,
                url,
                headers=headers,
                query=config.get("query") or config.get("params"),
                body=config.get("body", config.get("data")),
                timeout=config.get("timeout"),
                retries=config.get("retries"),
                auth=auth,
            )
            if not result.success:
                raise NodeExecutionError(node.id, f"HTTP {method} {url} failed: {result.error}")
            data = {"url": url, "method": method, "status": result.status, "body": result.data}

        key = method.lower()
        return NodeResult(
            data=data,
            variables={f"http_{key}_status": data["status"], f"http_{key}_data": data["body"]},
        )

    async def _handle_webhook(self, node: FlowNode, variables: Dict[str, Any]) -> NodeResult:
        config = render_template(node.config, variables)
        url = config.get("url")
        method = str(config.get("method") or "POST").upper()
        payload = config.get("payload") or {}

        if self.sandbox:
            return NodeResult(data={"webhook": url, "method": method, "payload": payload, "sandbox": True})

        client = self._require_api_client(node)
        body = dict(payload) if isinstance(payload, dict) else {"payload": payload}
        body["timestamp"] = datetime.now(timezone.utc).isoformat()
        raw_body = json.dumps(body, default=str, separators=(",", ":"))

        headers = {"Content-Type": "application/json"}
        headers.update(config.get("headers") or {})
        if config.get("secret"):
            headers["X-Webhook-Signature"] = sign_payload(str(config["secret"]), raw_body)

        result = await client.execute_api_call(
            method,
            url,
            headers=headers,
            body=raw_body,
            timeout=config.get("timeout"),
            retries=config.get("retries"),
        )
        if not result.success:
            raise NodeExecutionError(node.id, f"Webhook {method} {url} failed: {result.error}")
        return NodeResult(data={"webhook": url, "status": result.status, "response": result.data})

    async def _handle_call(self, node: FlowNode, variables: Dict[str, Any]) -> NodeResult:
        config = node.config
        target = config.get("target")
        if not target:
            target = "/".join(str(p) for p in (config.get("service"), config.get("method")) if p)
        if not target:
            raise NodeExecutionError(node.id, "Call node has no target")
        args = render_template(config.get("args") or {}, variables)

        if self.sandbox:
            data = {"call": target, "args": args, "result": "ok", "sandbox": True}
        else:
            client = self._require_api_client(node)
            url = f"{self.settings.api_base_url.rstrip('/')}/internal/{target.lstrip('/')}"
            result = await client.execute_api_call(
                "POST",
                url,
                headers={"Content-Type": "application/json", "X-Internal-Call": "true"},
                body=args,
                timeout=self.settings.call_timeout,
                retries=self.settings.call_retries,
            )
            if not result.success:
                raise NodeExecutionError(node.id, f"Service call {target} failed: {result.error}")
            data = {"call": target, "args": args, "result": result.data, "status": result.status}

        return NodeResult(data=data, variables={f"call_{_variable_suffix(target)}_result": data["result"]})

    # =========================================================================
    # Pure nodes
    # =========================================================================

    async def _handle_transform(self, node: FlowNode, variables: Dict[str, Any]) -> NodeResult:
        config = node.config
        script = config.get("script")
        language = config.get("language") or "expression"
        input_variable = config.get("inputVariable")
        input_data = variables.get(input_variable) if input_variable else variables

        if language in ("expression", "javascript"):
            result = evaluate_expression(script, variables, extra={"data": input_data})
        elif language == "jmespath":
            try:
                result = jmespath.search(script, input_data)
            except JMESPathError as e:
                raise NodeExecutionError(node.id, f"Invalid JMESPath expression: {e}") from e
        elif language == "jsonpath":
            # Always a list of matches, empty when nothing matched
            try:
                result = [match.value for match in parse_jsonpath(script).find(input_data)]
            except JSONPathError as e:
                raise NodeExecutionError(node.id, f"Invalid JSONPath expression: {e}") from e
        else:
            raise NodeExecutionError(node.id, f"Unsupported transform language: {language}")

        output_variable = config.get("outputVariable")
        if output_variable:
            patch = {output_variable: result}
        elif isinstance(result, dict):
            patch = dict(result)
        else:
            patch = {DEFAULT_TRANSFORM_OUTPUT: result}
        return NodeResult(data=result, variables=patch)

    async def _handle_delay(self, node: FlowNode, variables: Dict[str, Any]) -> NodeResult:
        requested_ms = delay_duration_ms(node.config)
        waited_ms = min(requested_ms, self.settings.sandbox_max_delay_ms) if self.sandbox else requested_ms
        await self._sleep(waited_ms / 1000)
        return NodeResult(data={"delayMs": requested_ms, "waitedMs": waited_ms})

    async def _handle_schedule(self, node: FlowNode, variables: Dict[str, Any]) -> NodeResult:
        config = node.config
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        fire_at = next_fire_time(
            cron=config.get("cron"),
            interval_ms=config.get("interval"),
            timezone=config.get("timezone"),
            now=now,
        )
        if fire_at is None:
            raise NodeExecutionError(node.id, "Schedule node requires either cron or interval configuration")

        next_ms = int(fire_at.timestamp() * 1000)
        return NodeResult(
            data={
                "nextExecution": next_ms,
                "scheduledAt": fire_at.isoformat(),
                "recurring": bool(config.get("recurring")),
            },
            variables={"schedule_next_execution": next_ms},
        )
