import asyncio
import logging
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Generic,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    TypeVar,
)

from .agents import TaskType, metadata_for
from .cache import DocumentCache, agent_cache_key
from .executor import Executor, failed_result, is_degraded
from .schemas import AgentResult, Shop


logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")
R = TypeVar("R")

_WORKER_DONE = object()


@dataclass
class Outcome(Generic[T, R]):
    """One worker message: the item, its position in the request, and result or error."""

    index: int
    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None


class Dispatcher:
    """Fixed-size worker pool that emits results in completion order."""

    def __init__(self, concurrency: int = 3):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self._background: Set[asyncio.Task] = set()

    async def map(
        self,
        items: Iterable[T],
        worker: Callable[[T], Awaitable[R]],
    ) -> AsyncIterator[Outcome]:
        work = list(items)
        if not work:
            return
        pending: asyncio.Queue = asyncio.Queue()
        for idx, item in enumerate(work):
            pending.put_nowait((idx, item))
        outbox: asyncio.Queue = asyncio.Queue()

        async def _run() -> None:
            try:
                while True:
                    try:
                        idx, item = pending.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    try:
                        result = await worker(item)
                    except Exception as exc:
                        logger.exception("Worker failed for %r", item)
                        await outbox.put(Outcome(idx, item, error=exc))
                    else:
                        await outbox.put(Outcome(idx, item, result=result))
            finally:
                await outbox.put(_WORKER_DONE)

        workers = [asyncio.create_task(_run()) for _ in range(min(len(work), self.concurrency))]
        for task in workers:
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        live = len(workers)
        while live:
            message = await outbox.get()
            if message is _WORKER_DONE:
                live -= 1
                continue
            yield message

    async def dispatch(
        self,
        tasks: Iterable[TaskType],
        subject: Shop,
        runner: Optional[Callable[[TaskType, Shop], Awaitable[AgentResult]]] = None,
        executor: Optional[Executor] = None,
    ) -> AsyncIterator[Tuple[TaskType, AgentResult]]:
        if runner is None:
            if executor is None:
                raise ValueError("dispatch needs a runner or an executor")
            runner = executor.run

        async def _one(task: TaskType) -> AgentResult:
            return await runner(task, subject)

        async for outcome in self.map(tasks, _one):
            if outcome.error is not None:
                yield outcome.item, failed_result(outcome.item, str(outcome.error))
            else:
                yield outcome.item, outcome.result


class AgentService:
    """Agent runs with a per-(shop, task) read-through cache."""

    def __init__(self, executor: Executor, dispatcher: Dispatcher, cache: DocumentCache):
        self.executor = executor
        self.dispatcher = dispatcher
        self.cache = cache

    def catalog(self) -> List[dict]:
        return [metadata_for(task) for task in TaskType.agents()]

    async def run_agent_task(self, task: TaskType, subject: Shop, force_refresh: bool = False) -> AgentResult:
        task = TaskType(task)
        key = agent_cache_key(subject.id, task) if subject.id else None
        if key and not force_refresh:
            entry = await self.cache.get(key)
            if entry and isinstance(entry.payload.get("result"), dict):
                return AgentResult.model_validate(entry.payload["result"])
        result = await self.executor.run(task, subject)
        if is_degraded(result):
            logger.info("Agent %s for %s degraded (%s); not cached", task.value, subject.name, result.summary)
        elif key:
            await self.cache.set(
                key,
                {
                    "shopId": subject.id,
                    "agentType": task.value,
                    "shopName": subject.name,
                    "result": result.to_payload(),
                },
            )
        return result

    async def run_agent_batch(
        self,
        tasks: Iterable[Any],
        subject: Shop,
        force_refresh: bool = False,
    ) -> AsyncIterator[AgentResult]:
        unique = list(dict.fromkeys(TaskType(t) for t in tasks))

        async def _runner(task: TaskType, shop: Shop) -> AgentResult:
            return await self.run_agent_task(task, shop, force_refresh=force_refresh)

        async for _task, result in self.dispatcher.dispatch(unique, subject, runner=_runner):
            yield result
