from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from .config import Settings
from .errors import InvalidUserId, LearningError
from .identity import is_valid_user_id
from .learning.analysis import ConversationAnalyzer
from .learning.context import ContextBuilder
from .learning.knowledge import KnowledgeSynthesizer
from .learning.pipeline import LearningPipeline, OperationResult
from .learning.user_memory import UserMemoryService
from .memory.factory import build_learning_store
from .personas import load_persona_catalog, provision_personas
from .services.llm_client import CompletionClient

logger = logging.getLogger("persona_learning")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    store: Any
    llm: CompletionClient | None
    pipeline: LearningPipeline

    async def start(self) -> None:
        await self.store.init()
        catalog = load_persona_catalog(self.settings.persona_catalog_path)
        await provision_personas(self.store, catalog)
        if self.llm is not None:
            await self.llm.start()

    async def close(self) -> None:
        if self.llm is not None:
            with contextlib.suppress(Exception):
                await self.llm.close()
        await self.store.close()


def build_llm(settings: Settings) -> CompletionClient | None:
    if not settings.llm_api_key:
        return None
    return CompletionClient(
        api_key=settings.llm_api_key,
        model=settings.llm_chat_model,
        timeout_seconds=settings.llm_timeout_seconds,
        temperature=settings.llm_chat_temperature,
        max_output_tokens=settings.llm_chat_max_tokens,
        base_url=settings.llm_base_url,
        app_title=settings.llm_app_title,
    )


def build_pipeline(settings: Settings, *, store: Any | None = None, llm: Any | None = None) -> LearningPipeline:
    store = build_learning_store(settings) if store is None else store
    analyzer = ConversationAnalyzer(
        llm,
        enabled=settings.analysis_enabled,
        timeout_seconds=settings.llm_analysis_timeout_seconds,
        temperature=settings.llm_analysis_temperature,
        model=settings.analysis_model,
    )
    synthesizer = KnowledgeSynthesizer(
        store,
        window_size=settings.knowledge_window_size,
        top_metrics_limit=settings.top_metrics_limit,
    )
    user_memory = UserMemoryService(store, limit=settings.user_memory_limit)
    context_builder = ContextBuilder(
        store,
        synthesizer,
        user_memory,
        top_metrics_limit=settings.top_metrics_limit,
        recent_success_limit=settings.recent_success_limit,
    )
    return LearningPipeline(
        store=store,
        analyzer=analyzer,
        synthesizer=synthesizer,
        user_memory=user_memory,
        context_builder=context_builder,
        llm=llm,
        learning_enabled=settings.learning_enabled,
        chat_temperature=settings.llm_chat_temperature,
    )


def build_runtime(settings: Settings) -> Runtime:
    store = build_learning_store(settings)
    llm = build_llm(settings)
    return Runtime(settings=settings, store=store, llm=llm, pipeline=build_pipeline(settings, store=store, llm=llm))


def _print_result(result: OperationResult) -> int:
    if not result.ok:
        print(f"error ({result.error_kind}): {result.error}")
        return 1
    return 0


async def _cmd_init(runtime: Runtime, args: argparse.Namespace) -> int:
    personas = await runtime.store.list_personas()
    print(f"Store ready ({runtime.store.backend_name}); {len(personas)} persona(s):")
    for persona in personas:
        print(f"  {persona.persona_id}: {persona.name} (level {persona.experience_level}, {persona.total_sessions} sessions)")
    return 0


async def _cmd_summary(runtime: Runtime, args: argparse.Namespace) -> int:
    result = await runtime.pipeline.get_learning_summary(args.persona)
    if _print_result(result):
        return 1
    summary = result.value
    print(f"Persona {summary.persona_id}: {summary.total_experiences} experiences in the last {summary.experience_window}")
    print(f"Average success rate: {summary.average_success_rate:.1f}%")
    for metric in summary.top_techniques:
        print(f"  {metric.technique}: {metric.success_rate * 100:.1f}% ({metric.total_attempts} uses)")
    for lesson in summary.recent_learnings:
        print(f"  lesson: {lesson}")
    print()
    print(await runtime.pipeline.synthesizer.synthesize_learnings(args.persona))
    return 0


async def _cmd_metrics(runtime: Runtime, args: argparse.Namespace) -> int:
    result = await runtime.pipeline.get_technique_metrics(args.persona, limit=args.limit)
    if _print_result(result):
        return 1
    if not result.value:
        print("No technique metrics yet.")
    for metric in result.value:
        print(
            f"{metric.technique}: attempts={metric.total_attempts} successes={metric.success_count} "
            f"rate={metric.success_rate:.3f} avg_rating={metric.average_rating:.2f}"
        )
    return 0


async def _cmd_memory(runtime: Runtime, args: argparse.Namespace) -> int:
    if not is_valid_user_id(args.user):
        raise InvalidUserId(args.user)
    await runtime.store.require_persona(args.persona)
    print(await runtime.pipeline.user_memory.generate_memory_summary(args.user, args.persona))
    return 0


async def _cmd_context(runtime: Runtime, args: argparse.Namespace) -> int:
    result = await runtime.pipeline.build_context(args.persona, args.user)
    if _print_result(result):
        return 1
    print(result.value)
    return 0


async def _cmd_reap(runtime: Runtime, args: argparse.Namespace) -> int:
    idle_seconds = args.idle_seconds or runtime.settings.session_idle_timeout_seconds
    if idle_seconds <= 0:
        print("Idle reaper disabled (set SESSION_IDLE_TIMEOUT_SECONDS or pass --idle-seconds).")
        return 1
    result = await runtime.pipeline.reap_idle_sessions(idle_seconds)
    if _print_result(result):
        return 1
    print(f"Ended {len(result.value)} idle session(s).")
    return 0


_COMMANDS = {
    "init": _cmd_init,
    "summary": _cmd_summary,
    "metrics": _cmd_metrics,
    "memory": _cmd_memory,
    "context": _cmd_context,
    "reap": _cmd_reap,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="persona-learning", description="Persona experience-learning pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the schema and provision the persona catalog")

    summary = sub.add_parser("summary", help="Show a persona's learning summary and briefing")
    summary.add_argument("persona")

    metrics = sub.add_parser("metrics", help="List a persona's technique metrics")
    metrics.add_argument("persona")
    metrics.add_argument("--limit", type=int, default=None)

    memory = sub.add_parser("memory", help="Show what a persona remembers about a user")
    memory.add_argument("user")
    memory.add_argument("persona")

    context = sub.add_parser("context", help="Print the composed instruction text for a persona")
    context.add_argument("persona")
    context.add_argument("--user", default=None)

    reap = sub.add_parser("reap", help="End idle sessions and capture their outcomes")
    reap.add_argument("--idle-seconds", type=int, default=0)
    return parser


async def _run(settings: Settings, args: argparse.Namespace) -> int:
    runtime = build_runtime(settings)
    try:
        await runtime.start()
        return await _COMMANDS[args.command](runtime, args)
    except LearningError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        await runtime.close()


def main(argv: Sequence[str] | None = None) -> None:
    configure_logging()
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    settings.validate(require_llm=False)
    try:
        code = asyncio.run(_run(settings, args))
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting.")
        code = 130
    raise SystemExit(code)
