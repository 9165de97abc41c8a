import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .agents import FieldKind, TaskType, definition_for, prompt_for, schema_for
from .errors import ConfigError, RateLimitError
from .llm import Completion, GeminiClient
from .schemas import AgentResult, Shop


logger = logging.getLogger("uvicorn.error")

BUSY_SUMMARY = "混雑中..."
BUSY_DETAILS = ["現在アクセスが集中しており、AIが応答できませんでした。", "少し時間をおいて再度お試しください。"]
FAILED_SUMMARY = "調査失敗"
CONFIG_SUMMARY = "AI接続エラー"
CONFIG_DETAILS = ["APIキーが設定されていません"]
EMPTY_SUMMARY = "情報なし"
DEGRADED_SUMMARIES = {BUSY_SUMMARY, FAILED_SUMMARY, CONFIG_SUMMARY}
RISK_LEVELS = {"safe", "caution", "danger"}


def is_degraded(result: AgentResult) -> bool:
    return result.summary in DEGRADED_SUMMARIES


def failed_result(task: TaskType, message: str) -> AgentResult:
    meta = definition_for(task)
    return AgentResult(
        agent_type=meta.task.value,
        agent_name=meta.name,
        icon=meta.icon,
        summary=FAILED_SUMMARY,
        details=[f"エラーが発生しました: {message}"],
        risk_level="caution",
    )


def _coerce_score(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def _coerce_details(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value if item not in (None, "")]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


class Executor:
    """Runs one registry task against the model, retrying only on rate limits."""

    def __init__(
        self,
        llm: GeminiClient,
        max_retries: int = 5,
        base_delay: float = 2.0,
        jitter: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.llm = llm
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.jitter = jitter
        self.sleep = sleep
        self.rng = rng or random.Random()

    def backoff_delay(self, retry: int) -> float:
        """Delay before retry number `retry` (1-based)."""
        return self.base_delay * (2 ** (retry - 1)) + self.rng.uniform(0, self.jitter)

    async def complete(self, task: TaskType, subject: Optional[Shop] = None, **context: Any) -> Completion:
        definition = definition_for(task)
        prompt = prompt_for(task, subject, **context)
        retries = 0
        while True:
            completion = await self.llm.complete(prompt, use_grounding=definition.grounding)
            if not isinstance(completion.error, RateLimitError) or retries >= self.max_retries:
                break
            retries += 1
            delay = self.backoff_delay(retries)
            logger.warning(
                "[Agent %s] Rate limit hit (429). Retrying in %.0fms... (Attempt %s/%s)",
                definition.task.value,
                delay * 1000,
                retries,
                self.max_retries,
            )
            await self.sleep(delay)
        if completion.error is not None:
            logger.error("Task %s failed: %s", definition.task.value, completion.error)
        return completion

    async def run(self, task: TaskType, subject: Shop) -> AgentResult:
        definition = definition_for(task)
        base: Dict[str, Any] = {
            "agent_type": definition.task.value,
            "agent_name": definition.name,
            "icon": definition.icon,
        }
        completion = await self.complete(task, subject)
        error = completion.error
        if isinstance(error, ConfigError):
            return AgentResult(**base, summary=CONFIG_SUMMARY, details=list(CONFIG_DETAILS), risk_level="danger")
        if isinstance(error, RateLimitError):
            return AgentResult(**base, summary=BUSY_SUMMARY, details=list(BUSY_DETAILS), risk_level="caution")
        if error is not None:
            return failed_result(definition.task, str(error))
        data = completion.data if isinstance(completion.data, dict) else {}
        return self.to_result(definition.task, data)

    def to_result(self, task: TaskType, data: Dict[str, Any]) -> AgentResult:
        definition = definition_for(task)
        shape = schema_for(task)
        summary = data.get("summary")
        fields: Dict[str, Any] = {
            "agent_type": definition.task.value,
            "agent_name": definition.name,
            "icon": definition.icon,
            "summary": str(summary) if summary else EMPTY_SUMMARY,
            "details": _coerce_details(data.get("details")),
        }
        if shape.get("score") == FieldKind.NUMBER:
            score = _coerce_score(data.get("score"))
            if score is not None:
                fields["score"] = score
        if shape.get("riskLevel") == FieldKind.RISK:
            risk = data.get("riskLevel")
            if isinstance(risk, str) and risk.lower() in RISK_LEVELS:
                fields["risk_level"] = risk.lower()
        return AgentResult(**fields)
