#!/usr/bin/env python3
"""junkrat CLI entrypoint."""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from junkrat.events import EventBus, ProgressEvent
from junkrat.lib.config import ConfigError, Settings, load_settings
from junkrat.lib.errors import AIError
from junkrat.lib.prompts import PromptEngine, PromptError
from junkrat.lib.storage import JsonFileStore
from junkrat.pm.formatter import to_json, to_markdown, to_summary
from junkrat.pm.generator import PhaseGenerator, PlanGenerationError
from junkrat.pm.models import PhasePlan
from junkrat.providers.dispatch import ProviderDispatcher
from junkrat.providers.factory import build_registry
from junkrat.providers.registry import ProviderRegistry
from junkrat.runner.autonomous import AutonomousExecutor
from junkrat.runner.context import RunContext
from junkrat.workflow.context import ContextBudgetManager
from junkrat.workflow.conversation import ConversationError, ConversationManager

logger = logging.getLogger(__name__)

# Failures a command reports and exits 1 on
OPERATION_ERRORS = (AIError, PlanGenerationError, ConversationError, PromptError)


@dataclass
class Services:
    """Everything a command needs, built in dependency order."""
    settings: Settings
    registry: ProviderRegistry
    dispatcher: ProviderDispatcher
    prompts: PromptEngine
    events: EventBus
    manager: ConversationManager

    async def aclose(self):
        await self.manager.flush()
        await self.registry.aclose()


def build_services(settings: Settings) -> Services:
    registry = build_registry(settings)
    dispatcher = ProviderDispatcher(registry, settings.retry)
    prompts = PromptEngine()
    events = EventBus()
    manager = ConversationManager(
        dispatcher,
        prompts,
        generator=PhaseGenerator(prompts),
        context=ContextBudgetManager(prompts, settings.context),
        store=JsonFileStore(settings.storage_dir),
        events=events,
        save_debounce=settings.storage.save_debounce,
    )
    manager.load_from_storage()
    return Services(settings, registry, dispatcher, prompts, events, manager)


def get_settings(args) -> Settings:
    """Load settings for --project (default: current directory)."""
    project_dir = Path(args.project).resolve() if args.project else None
    return load_settings(project_dir)


def _print_plan(plan: PhasePlan, fmt: str):
    print(to_json(plan) if fmt == "json" else to_markdown(plan))


async def _providers(services: Services) -> int:
    statuses = {s.id: s for s in await services.registry.check_all(use_cache=False)}
    active = services.registry.active_id

    print(f"{'PROVIDER':<12} {'ENABLED':<8} {'STATUS':<12} {'MODEL'}")
    for pid, provider_settings in services.settings.providers.items():
        status = statuses.get(pid)
        if status is None:
            state = "-"
        elif status.available:
            state = f"ok {status.response_time:.2f}s" if status.response_time is not None else "ok"
        else:
            state = "unavailable"
        marker = "*" if pid == active else " "
        print(f"{marker}{pid:<11} {str(provider_settings.enabled).lower():<8} {state:<12} {provider_settings.model}")
        if status is not None and status.error:
            print(f"  {status.error}")
    return 0


def cmd_providers(args, services: Services) -> int:
    """List configured providers with a fresh health probe."""
    return asyncio.run(_with_close(services, _providers(services)))


async def _with_close(services: Services, coro):
    try:
        return await coro
    finally:
        await services.aclose()


def cmd_chat(args, services: Services) -> int:
    async def run():
        result = await services.manager.send_message(
            args.message,
            conversation_id=args.conversation,
            provider_id=args.provider,
        )
        print(result.response)
        print(f"\n[{result.conversation.id}] {result.conversation.state.value}")
        return 0

    return asyncio.run(_with_close(services, run()))


def cmd_plan(args, services: Services) -> int:
    path = Path(args.requirements_file)
    if not path.exists():
        print(f"ERROR: Requirements file not found: {path}")
        return 1

    async def run():
        conversation = await services.manager.plan_from_requirements(
            path.read_text(), provider_id=args.provider
        )
        _print_plan(conversation.phase_plan, args.format)
        print(f"\nSaved as conversation {conversation.id}", file=sys.stderr)
        return 0

    return asyncio.run(_with_close(services, run()))


def _print_progress(event: ProgressEvent):
    print(
        f"[{event.iteration}/{event.max_iterations}] {event.status}: "
        f"{event.completed_tasks}/{event.total_tasks} tasks, combo {event.combo_multiplier:.1f}x"
    )


def cmd_run(args, services: Services) -> int:
    execution = services.settings.execution
    if args.strict:
        execution.verification = "strict"

    async def run():
        conversation_holder = {}

        async def plan_source(prompt: str) -> PhasePlan | None:
            conversation = await services.manager.plan_from_requirements(prompt, provider_id=args.provider)
            conversation_holder["id"] = conversation.id
            return conversation.phase_plan

        plan = None
        if args.conversation:
            conversation = services.manager.get_conversation(args.conversation)
            if conversation is None or conversation.phase_plan is None:
                print(f"ERROR: Conversation '{args.conversation}' has no phase plan")
                return 1
            plan = conversation.phase_plan
            conversation_holder["id"] = conversation.id

        services.events.on_progress(_print_progress)
        executor = AutonomousExecutor(
            services.dispatcher,
            services.prompts,
            plan_source=plan_source,
            events=services.events,
            settings=execution,
            run_context=RunContext.create(services.settings.storage_dir),
            provider_id=args.provider,
        )
        outcome = await executor.start(args.prompt, max_iterations=args.max_iterations, plan=plan)

        if "id" in conversation_holder:
            services.manager.save_conversation(conversation_holder["id"])

        print(f"\nResult: {outcome.status}")
        print(f"Tasks: {outcome.completed_tasks}/{outcome.total_tasks} in {outcome.iterations} iteration(s)")
        if executor.achievements:
            print(f"Achievements: {', '.join(executor.achievements)}")
        if outcome.error:
            print(f"Error: {outcome.error}")
        print(f"Run log: {executor.ctx.run_dir}")
        return 0 if outcome.success else 1

    return asyncio.run(_with_close(services, run()))


def cmd_conversations(args, services: Services) -> int:
    conversations = services.manager.list_conversations()
    if not conversations:
        print("No conversations yet.")
        return 0
    active = services.manager.active_id
    for meta in conversations:
        marker = "*" if meta.id == active else " "
        phases = f" ({meta.phase_count} phases)" if meta.phase_count else ""
        print(f"{marker} {meta.id}  {meta.state.value:<24} {meta.title}{phases}")
    return 0


def cmd_show(args, services: Services) -> int:
    conversation = services.manager.get_conversation(args.id)
    if conversation is None:
        print(f"ERROR: Conversation '{args.id}' not found")
        return 1

    if conversation.phase_plan is not None:
        if args.format == "summary":
            print(to_summary(conversation.phase_plan))
        else:
            _print_plan(conversation.phase_plan, args.format)
        return 0

    print(f"{conversation.metadata.title} [{conversation.state.value}]")
    for message in conversation.messages:
        if message.role == "system":
            continue
        print(f"\n{message.role.upper()}:\n{message.content}")
    return 0


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(prog='junkrat', description='Plan projects through conversation and run the plan')
    parser.add_argument('--project', '-p', help='Project directory (default: current directory)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # junkrat providers
    p_providers = subparsers.add_parser('providers', help='List providers and their health')
    p_providers.set_defaults(func=cmd_providers)

    # junkrat chat
    p_chat = subparsers.add_parser('chat', help='Send one message to a conversation')
    p_chat.add_argument('message', help='Message text')
    p_chat.add_argument('--conversation', '-c', help='Conversation ID (default: active conversation)')
    p_chat.add_argument('--provider', help='Preferred provider ID')
    p_chat.set_defaults(func=cmd_chat)

    # junkrat plan
    p_plan = subparsers.add_parser('plan', help='Generate a phase plan from a requirements file')
    p_plan.add_argument('requirements_file', help='Path to a text/markdown file with requirements')
    p_plan.add_argument('--format', '-f', choices=['markdown', 'json'], default='markdown')
    p_plan.add_argument('--provider', help='Preferred provider ID')
    p_plan.set_defaults(func=cmd_plan)

    # junkrat run
    p_run = subparsers.add_parser('run', help='Run the autonomous execution loop')
    p_run.add_argument('prompt', help='What to build')
    p_run.add_argument('--max-iterations', '-n', type=int, help='Iteration budget')
    p_run.add_argument('--strict', action='store_true', help='Require completion markers')
    p_run.add_argument('--conversation', '-c', help='Execute the plan of an existing conversation')
    p_run.add_argument('--provider', help='Preferred provider ID')
    p_run.set_defaults(func=cmd_run)

    # junkrat conversations
    p_conversations = subparsers.add_parser('conversations', help='List conversations')
    p_conversations.set_defaults(func=cmd_conversations)

    # junkrat show
    p_show = subparsers.add_parser('show', help='Show a conversation plan or history')
    p_show.add_argument('id', help='Conversation ID')
    p_show.add_argument('--format', '-f', choices=['markdown', 'json', 'summary'], default='markdown')
    p_show.set_defaults(func=cmd_show)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = get_settings(args)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return 2

    services = build_services(settings)
    try:
        return args.func(args, services)
    except OPERATION_ERRORS as e:
        print(f"ERROR: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
