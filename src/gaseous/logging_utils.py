"""
Logging utilities for the gasless pipeline.

Features:
- Structured logging for each pipeline step (resolve, build, sign, relay)
- RPC call metrics
- Sponsorship decision and admin audit trail
- Address masking
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import LoggingConfig, get_config

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Steps of the gasless pipeline."""
    RESOLVE_ACCOUNT = "resolve_account"
    BUILD_OPERATION = "build_operation"
    SIGN_OPERATION = "sign_operation"
    SPONSOR_OPERATION = "sponsor_operation"
    RELAY_SUBMIT = "relay_submit"
    RECEIPT_TRACKING = "receipt_tracking"


@dataclass
class OperationContext:
    """Context for one pipeline step."""
    operation_id: str
    operation_type: OperationType
    network: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (
            (self.completed_at - self.started_at).total_seconds() * 1000
        )
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "network": self.network,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class RPCCallLog:
    """Log entry for a JSON-RPC call."""
    method: str
    endpoint_url: str
    duration_ms: float
    success: bool
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    attempt: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "endpoint_url": mask_url(self.endpoint_url),
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "attempt": self.attempt,
        }


def mask_url(url: str) -> str:
    """Drop query parameters, which usually carry provider API keys."""
    if "?" in url:
        return f"{url.split('?')[0]}?<params_masked>"
    return url


def mask_address(address: str) -> str:
    """Mask middle portion of address for privacy."""
    if len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


class PipelineLogger:
    """
    Structured logger shared by the pipeline and the sponsorship engine.

    Keeps a bounded history of RPC calls for metrics and writes audit
    entries either to a JSON-lines file or to the standard logger.
    """

    def __init__(
        self,
        name: str = "gaseous",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._config = config or get_config().logging
        self._operation_counter = 0
        self._rpc_calls: List[RPCCallLog] = []
        self._max_history = 1000

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        return f"op_{int(time.time() * 1000)}_{self._operation_counter}"

    def _get_level(self, level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    def _address(self, address: str) -> str:
        return mask_address(address) if self._config.mask_addresses else address

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        network: str,
        **metadata: Any,
    ):
        """
        Context manager timing one pipeline step.

        Usage:
            async with plog.operation_context(OperationType.RELAY_SUBMIT, "base") as ctx:
                ctx.metadata["user_op_hash"] = op_hash
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            network=network,
            metadata=metadata,
        )
        self._logger.debug(
            f"Starting {operation_type.value} on {network}",
            extra={"operation": ctx.to_dict()},
        )
        try:
            yield ctx
            ctx.complete(success=True)
        except BaseException as e:
            ctx.complete(success=False, error=str(e) or type(e).__name__)
            raise
        finally:
            level = (
                self._get_level(self._config.operation_level)
                if ctx.success
                else self._get_level(self._config.error_level)
            )
            self._logger.log(
                level,
                f"Completed {operation_type.value} on {network} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_rpc_call(
        self,
        method: str,
        endpoint_url: str,
        duration_ms: float,
        success: bool,
        error_code: Optional[int] = None,
        error_message: Optional[str] = None,
        attempt: int = 1,
    ) -> None:
        """Log a JSON-RPC call."""
        entry = RPCCallLog(
            method=method,
            endpoint_url=endpoint_url,
            duration_ms=duration_ms,
            success=success,
            error_code=error_code,
            error_message=error_message,
            attempt=attempt,
        )
        self._rpc_calls.append(entry)
        if len(self._rpc_calls) > self._max_history:
            self._rpc_calls = self._rpc_calls[-self._max_history:]

        level = (
            self._get_level(self._config.rpc_call_level)
            if success
            else self._get_level(self._config.error_level)
        )
        self._logger.log(
            level,
            f"RPC {method} in {duration_ms:.0f}ms (success={success})",
            extra={"rpc_call": entry.to_dict()},
        )

    def log_fee_estimate(
        self,
        network: str,
        max_fee_per_gas: int,
        max_priority_fee_per_gas: int,
        is_floor: bool = False,
    ) -> None:
        """Log fee bounds chosen for an operation."""
        if not self._config.log_gas_prices:
            return
        self._logger.debug(
            f"Fee bounds for {network}: max_fee={max_fee_per_gas / 1e9:.3f} gwei, "
            f"priority_fee={max_priority_fee_per_gas / 1e9:.3f} gwei"
            + (" (FLOOR)" if is_floor else ""),
            extra={
                "fee_estimate": {
                    "network": network,
                    "max_fee_per_gas": max_fee_per_gas,
                    "max_priority_fee_per_gas": max_priority_fee_per_gas,
                    "is_floor": is_floor,
                }
            },
        )

    def log_user_operation_submitted(
        self,
        user_op_hash: str,
        network: str,
        sender: str,
        nonce: int,
        sponsored: bool,
    ) -> None:
        """Log an operation accepted by the bundler."""
        data = {
            "user_op_hash": user_op_hash,
            "network": network,
            "sender": self._address(sender),
            "nonce": nonce,
            "sponsored": sponsored,
        }
        self._logger.log(
            self._get_level(self._config.operation_level),
            f"UserOperation submitted: {user_op_hash} on {network}",
            extra={"user_operation": data},
        )
        if self._config.audit_log_enabled:
            self.write_audit_log("user_operation_submitted", data)

    def log_sponsorship_decision(
        self,
        user: str,
        value: int,
        allowed: bool,
        reason: Optional[str] = None,
    ) -> None:
        """Log the outcome of a sponsorship check."""
        level = logging.INFO if allowed else logging.WARNING
        self._logger.log(
            level,
            f"Sponsorship {'allowed' if allowed else 'denied'} for {self._address(user)}"
            + (f": {reason}" if reason else ""),
            extra={
                "sponsorship": {
                    "user": self._address(user),
                    "value_wei": value,
                    "allowed": allowed,
                    "reason": reason,
                }
            },
        )

    def log_sponsorship_charge(self, user: str, value: int, refunded: bool = False) -> None:
        """Audit a quota charge, or its reversal when the relay refused the operation."""
        event_type = "sponsorship_refunded" if refunded else "sponsorship_charged"
        self.write_audit_log(event_type, {"user": self._address(user), "value_wei": value})

    def write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        """Write to audit log."""
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "data": data,
        }
        if self._config.audit_log_path:
            try:
                with open(self._config.audit_log_path, "a") as f:
                    f.write(json.dumps(audit_entry, default=str) + "\n")
            except OSError as e:
                self._logger.error(f"Failed to write audit log: {e}")
        else:
            self._logger.info(
                f"AUDIT: {event_type}",
                extra={"audit": audit_entry},
            )

    def get_rpc_metrics(self) -> Dict[str, Any]:
        """Get RPC call metrics."""
        if not self._rpc_calls:
            return {"total_calls": 0}

        successful = [c for c in self._rpc_calls if c.success]
        latencies = [c.duration_ms for c in successful]
        return {
            "total_calls": len(self._rpc_calls),
            "successful_calls": len(successful),
            "failed_calls": len(self._rpc_calls) - len(successful),
            "success_rate": len(successful) / len(self._rpc_calls),
            "avg_latency_ms": sum(latencies) / len(latencies) if latencies else 0,
            "max_latency_ms": max(latencies) if latencies else 0,
        }


# Global logger instance
_pipeline_logger: Optional[PipelineLogger] = None


def get_pipeline_logger(
    name: str = "gaseous",
    config: Optional[LoggingConfig] = None,
) -> PipelineLogger:
    """Get the global pipeline logger instance."""
    global _pipeline_logger
    if _pipeline_logger is None:
        _pipeline_logger = PipelineLogger(name, config)
    return _pipeline_logger


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level
        format_string: Custom format string
        json_format: Use JSON formatting
    """
    if format_string is None:
        if json_format:
            format_string = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_string,
    )

    logging.getLogger("gaseous").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
