"""Interfaces to the validation and automation collaborators.

The engine never evaluates business rules or runs automation scripts itself;
it hands them to these collaborators and treats their verdict as final.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class RuleResult(BaseModel):
    rule: str
    passed: bool
    message: Optional[str] = None


class ScriptResult(BaseModel):
    success: bool
    output: Any = None
    error: Optional[str] = None


class Validator(Protocol):
    async def run_validation(
        self, rule_ids: Sequence[str], context: Dict[str, Any]
    ) -> List[RuleResult]:
        """Evaluate each rule against the instance context."""


class ScriptRunner(Protocol):
    async def run_script(self, script: str, context: Dict[str, Any]) -> ScriptResult:
        """Run ``script`` outside the engine process and report its outcome."""


RuleFn = Callable[[Dict[str, Any]], Union[bool, Awaitable[bool]]]


class RuleRegistryValidator:
    """Validator backed by a table of named rule callables.

    Unknown rule ids fail rather than pass silently.
    """

    def __init__(self, rules: Optional[Dict[str, RuleFn]] = None) -> None:
        self._rules: Dict[str, RuleFn] = dict(rules or {})

    def register(self, rule_id: str) -> Callable[[RuleFn], RuleFn]:
        def decorator(fn: RuleFn) -> RuleFn:
            self._rules[rule_id] = fn
            return fn

        return decorator

    async def run_validation(
        self, rule_ids: Sequence[str], context: Dict[str, Any]
    ) -> List[RuleResult]:
        results: List[RuleResult] = []
        for rule_id in rule_ids:
            fn = self._rules.get(rule_id)
            if fn is None:
                results.append(RuleResult(rule=rule_id, passed=False, message="unknown rule"))
                continue
            outcome = fn(context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            results.append(RuleResult(rule=rule_id, passed=bool(outcome)))
        return results


class SubprocessScriptRunner:
    """Run automation scripts in an isolated child interpreter.

    The instance context is written to the child's stdin as JSON; whatever the
    script prints to stdout is returned as output (parsed as JSON when
    possible). A non-zero exit code is a failed run.
    """

    def __init__(
        self, command: Optional[Sequence[str]] = None, timeout: float = 30.0
    ) -> None:
        self.command = list(command or [sys.executable, "-I", "-c"])
        self.timeout = timeout

    async def run_script(self, script: str, context: Dict[str, Any]) -> ScriptResult:
        proc = await asyncio.create_subprocess_exec(
            *self.command,
            script,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(json.dumps(context, default=str).encode()),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ScriptResult(success=False, error=f"script timed out after {self.timeout}s")

        if proc.returncode != 0:
            error = stderr.decode().strip() or f"exit code {proc.returncode}"
            logger.warning(f"Automation script failed: {error}")
            return ScriptResult(success=False, error=error)

        text = stdout.decode().strip()
        try:
            output: Any = json.loads(text) if text else None
        except json.JSONDecodeError:
            output = text
        return ScriptResult(success=True, output=output)
