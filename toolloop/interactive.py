#!/usr/bin/env python3
"""
toolloop command-line interface

Subcommands:
- ask: run one prompt through the tool-use loop
- compare: run one prompt against several models concurrently
- tools: print the built-in tool catalog

Settings come from the environment (and .env) unless a YAML file is
given with --config or CONFIG_PATH.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import uuid
from typing import Any, Optional

from .config import config
from .config_loader import load_app_config
from .errors import ToolLoopError, TransportError
from .llm_call import CompletionClient, TransportMode
from .orchestration.loop import LoopResult, ToolUseLoop
from .orchestration.runtime import build_initial_messages, compare_models
from .orchestration.tool_defs import build_tool_definitions
from .tools.builtin import register_builtin_tools
from .tools.registry import ToolRegistry
from .tracing import TracingContext, init_tracing_client, shutdown_tracing

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, level_name: str = "INFO") -> None:
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def load_settings(path: Optional[str] = None) -> Any:
    """YAML settings when a file is named, else the environment config."""
    if path or os.environ.get("CONFIG_PATH"):
        return load_app_config(path)
    return config


def build_client(settings: Any) -> CompletionClient:
    transport = settings.transport
    return CompletionClient(
        base_url=transport.base_url,
        api_key=transport.api_key,
        timeout=transport.timeout,
        app_title=transport.app_title,
        referer=transport.referer,
    )


def _print_token(token: str) -> None:
    sys.stdout.write(token)
    sys.stdout.flush()


def _install_cancel_handler(cancel_event: asyncio.Event) -> None:
    """First Ctrl+C stops the run at the next checkpoint."""
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable; Ctrl+C will abort immediately")


def _result_summary(result: LoopResult) -> dict:
    return {
        "outcome": result.outcome.value,
        "output": result.output_text,
        "resolved_model": result.resolved_model,
        "usage": result.usage.model_dump(),
        "requests": result.iterations,
        "steps": result.step_count,
    }


def _generation_options(args: argparse.Namespace, settings: Any) -> dict:
    """Command-line overrides; the loop takes everything else from ``settings``."""
    return {
        "temperature": args.temperature,
        "max_tokens": args.max_tokens,
        "settings": settings,
    }


async def run_ask(args: argparse.Namespace, settings: Any) -> int:
    """Run a single prompt and print the answer."""
    messages = build_initial_messages(args.system, args.prompt)
    execution_id = str(uuid.uuid4())
    model = args.model or settings.loop.model
    stream = (args.stream or settings.loop.stream) and not args.json

    tracing_context: Optional[TracingContext] = None
    if settings.langfuse.enabled:
        init_tracing_client(settings.langfuse)
        tracing_context = TracingContext(execution_id=execution_id)
        tracing_context.start_trace(name="ask", input={"prompt": args.prompt, "model": model})

    cancel_event = asyncio.Event()
    _install_cancel_handler(cancel_event)

    async with build_client(settings) as client:
        loop = ToolUseLoop(
            client,
            ToolRegistry(),
            model=model,
            mode=TransportMode.STREAMED if stream else TransportMode.BUFFERED,
            tracing_context=tracing_context,
            correlation_id=execution_id,
            **_generation_options(args, settings),
        )
        try:
            result = await loop.run(
                messages,
                tools=[],
                on_token=_print_token if stream else None,
                cancel_event=cancel_event,
            )
        except TransportError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            if tracing_context:
                tracing_context.end_trace(output=e.message, status="error")
                shutdown_tracing()
            return 1

    if tracing_context:
        tracing_context.end_trace(output=result.output_text, metadata={"outcome": result.outcome.value})
        shutdown_tracing()

    if args.json:
        print(json.dumps(_result_summary(result), indent=2))
    elif stream:
        print()
    else:
        print(result.output_text)
    if result.resolved_model and result.resolved_model != model:
        print(f"(resolved model: {result.resolved_model})", file=sys.stderr)
    return 0


async def run_compare(args: argparse.Namespace, settings: Any) -> int:
    """Run one prompt against every --model and print each answer."""
    messages = build_initial_messages(args.system, args.prompt)
    async with build_client(settings) as client:
        entries = await compare_models(
            client,
            ToolRegistry(),
            args.model,
            messages,
            tools=[],
            mode=TransportMode.BUFFERED,
            **_generation_options(args, settings),
        )

    failed = 0
    output = []
    for entry in entries:
        if entry.ok:
            output.append({"model": entry.model, **_result_summary(entry.result)})
        else:
            failed += 1
            message = entry.error.message if isinstance(entry.error, ToolLoopError) else str(entry.error)
            output.append({"model": entry.model, "error": message})

    if args.json:
        print(json.dumps(output, indent=2))
    else:
        for item in output:
            print(f"=== {item['model']} ===")
            print(item["output"] if "output" in item else f"Error: {item['error']}")
            print()
    return 1 if failed == len(entries) else 0


def run_tools(args: argparse.Namespace) -> int:
    """Print the built-in catalog."""
    registry = ToolRegistry()
    register_builtin_tools(registry)
    if args.json:
        print(json.dumps(build_tool_definitions(registry), indent=2))
    else:
        print(registry.get_tools_summary())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolloop",
        description="Tool-use loop CLI for OpenAI-compatible completion APIs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ask "What is 2+2?"
  %(prog)s ask --stream --model openai/gpt-4o-mini "Tell me a joke"
  %(prog)s compare "Summarize TCP" --model a/one --model b/two
  %(prog)s --json tools
  %(prog)s --config config.yaml ask "Hello"
""",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    parser.add_argument(
        "--config", default=None, help="YAML settings file (default: CONFIG_PATH env, else environment)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_generation_options(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("prompt", help="User prompt")
        sub.add_argument("--system", default=None, help="Optional system prompt")
        sub.add_argument("--temperature", type=float, default=None, help="Sampling temperature (0-2)")
        sub.add_argument("--max-tokens", type=int, default=None, help="Completion token limit")

    ask = subparsers.add_parser("ask", help="Run one prompt")
    add_generation_options(ask)
    ask.add_argument("--model", default=None, help="Model id (default: LOOP_MODEL)")
    ask.add_argument("--stream", action="store_true", help="Stream tokens as they arrive")

    compare = subparsers.add_parser("compare", help="Run one prompt against several models")
    add_generation_options(compare)
    compare.add_argument(
        "--model", action="append", required=True, help="Model id (repeat for each model)"
    )

    subparsers.add_parser("tools", help="Show the built-in tool catalog")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.command == "tools":
        setup_logging(args.verbose)
        return run_tools(args)

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    setup_logging(args.verbose, settings.log_level)

    try:
        if args.command == "compare":
            return asyncio.run(run_compare(args, settings))
        return asyncio.run(run_ask(args, settings))
    except ToolLoopError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
