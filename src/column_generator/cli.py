import argparse
import asyncio
import logging
import os
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

from .config import GeneratorConfig, load_config
from .errors import MissingApiKeyError
from .model_client import ModelInvoker, build_openrouter_client
from .orchestrator import generate_columns
from .stats import RunResult


API_KEY_ENV_VAR = "OPENROUTER_API_KEY"
RULE = "=" * 80


def read_api_key() -> str:
    api_key = os.environ.get(API_KEY_ENV_VAR, "").strip()
    if not api_key:
        raise MissingApiKeyError(f"{API_KEY_ENV_VAR} not found in environment or .env file")
    return api_key


async def _run(config: GeneratorConfig, api_key: str, show_progress: bool) -> RunResult:
    client = build_openrouter_client(
        api_key=api_key,
        base_url=config.api_base_url,
        timeout_seconds=config.request_timeout_seconds,
        app_referer=config.app_referer,
        app_title=config.app_title,
    )
    async with client:
        invoker = ModelInvoker(client, timeout_seconds=config.request_timeout_seconds)
        return await generate_columns(config, invoker, show_progress=show_progress)


def _print_summary(result: RunResult, elapsed_seconds: float) -> None:
    totals = result.totals
    print(f"\n{RULE}")
    print("✓ Processing Complete!")
    print(RULE)
    print(f"Total execution time: {elapsed_seconds:.2f}s")
    print(f"Output file: {result.output_path}")
    print("\nOverall Statistics:")
    print(
        f"  Total tokens:   {totals.total_tokens:,} "
        f"({totals.prompt_tokens:,} prompt + {totals.completion_tokens:,} completion)"
    )
    if totals.cost > 0:
        print(f"  Total cost:     ${totals.cost:.8f}")
    print(f"{RULE}\n")


def _print_fatal(error: BaseException) -> None:
    print(f"\n{RULE}", file=sys.stderr)
    print("✗ Fatal Error", file=sys.stderr)
    print(RULE, file=sys.stderr)
    print(f"Error: {error}", file=sys.stderr)
    if isinstance(error, ExceptionGroup):
        for sub_error in error.exceptions:
            print(f"  {type(sub_error).__name__}: {sub_error}", file=sys.stderr)
    print(f"{RULE}\n", file=sys.stderr)


def run(args: argparse.Namespace) -> int:
    start_time = time.perf_counter()
    print(f"\n{RULE}")
    print("CSV Column Generator with OpenRouter AI")
    print(f"{RULE}\n")

    try:
        config_path = Path(args.config)
        print("[1/3] Checking configuration...")
        if not config_path.exists():
            print(f"  ✗ Config file not found: {config_path}", file=sys.stderr)
            print("\nUsage: column-generator [config.yaml]")
            return 1
        print(f"  ✓ Config file found: {config_path}")

        api_key = read_api_key()
        print(f"  ✓ API key loaded ({api_key[:8]}...)")

        print("\n[2/3] Loading configuration...")
        config = load_config(config_path)
        print("  ✓ Configuration loaded successfully")
        print(f"    Input:   {config.input_path}")
        print(f"    Output:  {config.output_path}")
        print(f"    Columns: {len(config.columns)}")

        print("\n[3/3] Processing columns...")
        result = asyncio.run(_run(config, api_key, show_progress=not args.no_progress))
    except Exception as error:
        _print_fatal(error)
        return 1

    _print_summary(result, time.perf_counter() - start_time)
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate CSV columns with an LLM, one call per row.")
    parser.add_argument("config", nargs="?", default="config.yaml", help="Path to YAML/JSON config file.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for batch progress output.",
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable the per-column progress bar.")
    return parser.parse_args(argv)


def main() -> None:
    load_dotenv()
    args = parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(message)s")
    sys.exit(run(args))


if __name__ == "__main__":
    main()
