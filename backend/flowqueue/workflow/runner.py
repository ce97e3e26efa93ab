"""Workflow runtime executing the node graph of one execution."""
from __future__ import annotations

import copy
import heapq
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any

from flask import current_app

from ..errors import (
    FlowqueueError,
    JobCancelledError,
    PermanentNodeError,
    TransientNodeError,
    classify_error,
)
from ..models.execution import Execution
from ..models.workflow import Workflow
from . import executions, logsink, versions
from .nodes import NodeContext, get_node_handler
from .templates import build_scope, get_path, set_path, substitute


@dataclass
class RunResult:
    success: bool
    output: Any = None
    failed_node_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False
    node_metrics: dict[str, dict[str, Any]] = field(default_factory=dict)


def load_snapshot(
    workflow: Workflow, version: int, frozen: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Return the content an execution pinned to ``version`` must run.

    ``frozen`` is the copy taken when a draft test run was queued; it wins
    over the live workflow, which may have been edited since.
    """

    if frozen is not None:
        return copy.deepcopy(frozen)
    record = versions.find_version(workflow.id, version)
    if record is not None:
        return copy.deepcopy(record.snapshot)
    if workflow.version == version:
        # draft test run: the live content is the pinned version
        return versions.snapshot_of(workflow)
    raise PermanentNodeError(
        f"version {version} of workflow {workflow.id} no longer exists", code="VERSION_NOT_FOUND"
    )


def topological_order(nodes: list[dict[str, Any]], edges: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order nodes so every node follows its upstream nodes.

    Ties keep the order in which the nodes are declared.
    """

    position = {node["id"]: index for index, node in enumerate(nodes)}
    adjacency: dict[str, set[str]] = {node_id: set() for node_id in position}
    indegree: dict[str, int] = {node_id: 0 for node_id in position}

    for edge in edges:
        source, target = edge.get("source"), edge.get("target")
        if source not in position or target not in position or target in adjacency[source]:
            continue
        adjacency[source].add(target)
        indegree[target] += 1

    heap = [(position[node_id], node_id) for node_id, degree in indegree.items() if degree == 0]
    heapq.heapify(heap)
    ordered: list[str] = []
    while heap:
        _, node_id = heapq.heappop(heap)
        ordered.append(node_id)
        for neighbour in adjacency[node_id]:
            indegree[neighbour] -= 1
            if indegree[neighbour] == 0:
                heapq.heappush(heap, (position[neighbour], neighbour))

    if len(ordered) != len(nodes):
        raise PermanentNodeError("cycle detected in workflow graph", code="CYCLE_DETECTED")
    by_id = {node["id"]: node for node in nodes}
    return [by_id[node_id] for node_id in ordered]


def gather_inputs(
    node_id: str, edges: list[dict[str, Any]], node_outputs: dict[str, Any]
) -> dict[str, Any]:
    """Collect upstream outputs keyed by target handle, applying field mappings."""

    inputs: dict[str, Any] = {}
    for edge in edges:
        if edge.get("target") != node_id or edge.get("source") not in node_outputs:
            continue
        source_output = node_outputs[edge["source"]]
        mapping = edge.get("mapping")
        if isinstance(mapping, list) and mapping:
            for item in mapping:
                if not isinstance(item, dict) or not item.get("target_field"):
                    continue
                value = get_path(source_output, str(item.get("source_field") or ""))
                set_path(inputs, item["target_field"], value)
        else:
            inputs[edge.get("target_handle") or "default"] = source_output
    return inputs


def initial_variables(declared: Any) -> dict[str, Any]:
    variables: dict[str, Any] = {}
    for item in declared or []:
        if isinstance(item, dict) and item.get("name"):
            variables[item["name"]] = copy.deepcopy(item.get("default_value"))
    return variables


def _node_timeout(node: dict[str, Any]) -> float:
    timeout_ms = node.get("timeout")
    if isinstance(timeout_ms, (int, float)) and timeout_ms > 0:
        return timeout_ms / 1000.0
    return float(current_app.config.get("NODE_TIMEOUT_SECONDS", 30))


def _invoke(handler, config, inputs, ctx: NodeContext, timeout: float) -> Any:
    app = current_app._get_current_object()

    def call() -> Any:
        with app.app_context():
            return handler(config, inputs, ctx)

    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"node-{ctx.node_id}")
    try:
        return pool.submit(call).result(timeout=timeout)
    except FutureTimeout:
        raise TransientNodeError(
            f"Node {ctx.node_id} exceeded its {timeout:g}s timeout", code="TIMEOUT"
        ) from None
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


def _flush_handler_logs(ctx: NodeContext) -> None:
    for level, message, data in ctx.logs:
        event = "node_error" if level == "error" else "custom"
        logsink.add_log(ctx.execution_id, ctx.node_id, level, event, message, data)
    ctx.logs.clear()


def _as_output(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {"result": value}


def run_execution(
    execution: Execution,
    workflow: Workflow,
    *,
    attempt: int = 1,
    check_cancelled: Callable[[], None] | None = None,
) -> RunResult:
    """Execute every node of the pinned snapshot in dependency order.

    Each node's output is written to the execution record before the next
    node starts.  ``check_cancelled`` runs between nodes and aborts the run
    by raising :class:`JobCancelledError`.
    """

    started = time.monotonic()
    snapshot = load_snapshot(workflow, execution.workflow_version, execution.snapshot)
    graph = snapshot.get("graph") or {}
    settings = snapshot.get("settings") or workflow.settings or {}
    error_handling = settings.get("error_handling") or "stop"
    max_time_ms = settings.get("max_execution_time_ms")

    nodes = [node for node in graph.get("nodes") or [] if isinstance(node, dict) and node.get("id")]
    edges = [edge for edge in graph.get("edges") or [] if isinstance(edge, dict)]
    ordered = topological_order(nodes, edges)

    trigger = execution.trigger or {}
    variables = initial_variables(snapshot.get("variables"))
    node_outputs: dict[str, Any] = {}
    node_metrics: dict[str, dict[str, Any]] = {}
    completed: list[str] = []
    first_failure: RunResult | None = None

    for node in ordered:
        if check_cancelled is not None:
            check_cancelled()
        node_id = node["id"]
        node_type = node.get("type")

        if node.get("enabled", True) is False:
            executions.record_node_result(execution.id, node_id, "skipped", variables=variables)
            logsink.add_log(execution.id, node_id, "info", "node_skip", f"Skipping disabled node: {node_type}")
            continue

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if isinstance(max_time_ms, (int, float)) and max_time_ms > 0 and elapsed_ms > max_time_ms:
            raise PermanentNodeError(
                f"Execution exceeded {max_time_ms}ms", code="EXECUTION_TIMEOUT"
            )

        node_started = time.monotonic()
        ctx = NodeContext(
            execution_id=execution.id,
            workflow_id=workflow.id,
            tenant_id=workflow.tenant_id,
            node_id=node_id,
            trigger=trigger,
            variables=variables,
            node_outputs=node_outputs,
            attempt=attempt,
        )
        try:
            handler = get_node_handler(str(node_type))
            config = substitute(node.get("config") or {}, build_scope(trigger, node_outputs, variables))
            inputs = gather_inputs(node_id, edges, node_outputs)
            logsink.add_log(
                execution.id, node_id, "info", "node_start", f"Starting node: {node_type}", {"config": config}
            )
            output = _as_output(_invoke(handler, config, inputs, ctx, _node_timeout(node)))
        except JobCancelledError:
            raise
        except Exception as exc:
            duration_ms = int((time.monotonic() - node_started) * 1000)
            if isinstance(exc, FlowqueueError):
                code, message = exc.code, exc.message
            else:
                current_app.logger.exception("Node %s of execution %s raised", node_id, execution.id)
                code, message = "HANDLER_EXCEPTION", str(exc) or type(exc).__name__
            retryable = classify_error(exc)
            _flush_handler_logs(ctx)
            executions.record_node_result(
                execution.id,
                node_id,
                "failed",
                error=executions.error_payload(node_id, code, message),
                duration_ms=duration_ms,
                variables=variables,
            )
            node_metrics[node_id] = {"duration_ms": duration_ms}
            logsink.add_log(
                execution.id, node_id, "error", "node_error", message, {"code": code, "retryable": retryable}
            )
            failure = RunResult(
                success=False,
                failed_node_id=node_id,
                error_code=code,
                error_message=message,
                retryable=retryable,
                node_metrics=node_metrics,
            )
            if error_handling != "continue":
                return failure
            if first_failure is None:
                # with "continue" the run still fails, but never retries
                failure.retryable = False
                first_failure = failure
            continue

        duration_ms = int((time.monotonic() - node_started) * 1000)
        _flush_handler_logs(ctx)
        node_outputs[node_id] = output
        completed.append(node_id)
        executions.record_node_result(
            execution.id, node_id, "completed", output=output, duration_ms=duration_ms, variables=variables
        )
        node_metrics[node_id] = {"duration_ms": duration_ms}
        logsink.add_log(
            execution.id,
            node_id,
            "info",
            "node_complete",
            "Node completed successfully",
            {"duration_ms": duration_ms},
        )

    if first_failure is not None:
        return first_failure

    terminal = [
        node["id"]
        for node in ordered
        if node["id"] in node_outputs and not any(edge.get("source") == node["id"] for edge in edges)
    ]
    if terminal:
        output = node_outputs[terminal[-1]]
    elif completed:
        output = node_outputs[completed[-1]]
    else:
        output = {}
    return RunResult(success=True, output=output, node_metrics=node_metrics)
