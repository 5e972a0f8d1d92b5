#!/usr/bin/env python3
"""
Scrape Orchestrator CLI - Main Entry Point

Creates and runs scraping tasks from the command line, shows stored
results and validates proxy lists.
"""

import sys
import json
import asyncio
from pathlib import Path
from typing import List, Optional, Dict, Any
from urllib.parse import urlparse

from colorama import Fore, Style, init
from tabulate import tabulate
from tqdm import tqdm

from .config import OrchestratorConfig, ProxyType, TaskState
from .exceptions import ConfigurationError, OrchestratorError
from .logging_config import LoggingManager, create_logging_manager
from .orchestrator import ScrapeOrchestrator
from .parser import create_parser, parse_selector_args
from .proxy_pool import ProxyPool, parse_proxy_line
from .result_sink import FileResultSink, SinkConfig
from .task_store import TaskStore
from .browser_provider import create_browserbase_provider

# Initialize colorama for cross-platform ANSI color support
init(autoreset=True)

STATE_COLORS = {
    TaskState.COMPLETED: Fore.GREEN,
    TaskState.FAILED: Fore.RED,
    TaskState.PAUSED: Fore.YELLOW,
    TaskState.RUNNING: Fore.CYAN,
    TaskState.IDLE: Fore.WHITE,
}

STATUS_POLL_INTERVAL = 0.5  # seconds


def colored_state(state: TaskState) -> str:
    return f"{STATE_COLORS.get(state, Fore.WHITE)}{state.value}{Style.RESET_ALL}"


def print_items(items: List[Dict[str, Any]], output_format: str = 'table', limit: int = 50) -> None:
    """Print extracted items as a table or JSON."""
    if output_format == 'json':
        print(json.dumps(items, indent=2, default=str, ensure_ascii=False))
        return

    if not items:
        print(f"{Fore.YELLOW}No items extracted{Style.RESET_ALL}")
        return

    print(tabulate(items[:limit], headers='keys', tablefmt='grid'))
    if len(items) > limit:
        print(f"... and {len(items) - limit} more items")


def build_task_options(args) -> Dict[str, Any]:
    """Translate scrape arguments into task options."""
    selectors = (
        parse_selector_args(args.selector)
        + parse_selector_args(args.list_selector, multiple=True)
        + parse_selector_args(args.visual_selector, selector_type='visual')
    )
    options: Dict[str, Any] = {
        'name': args.name or urlparse(args.url).netloc or args.url,
        'target_url': args.url,
        'selectors': selectors,
        'use_proxy': not args.no_proxy,
    }
    if args.method:
        options['method'] = args.method
    if args.wait_for:
        options['wait_for_selector'] = args.wait_for
    if args.evasion:
        options['behavior_settings'] = {'evasion_level': args.evasion}
    if args.proxy_country:
        options['proxy_country'] = args.proxy_country
    if args.max_pages:
        options['pagination'] = {'type': 'page-number', 'max_pages': args.max_pages}
    return options


def create_provider(logging_manager: LoggingManager, config: OrchestratorConfig):
    """Browserbase provider when credentials are configured, else None."""
    try:
        return create_browserbase_provider(navigation_timeout=config.navigation_timeout)
    except ConfigurationError as e:
        logging_manager.logger.warning(f"Browser sessions unavailable: {e}")
        return None


async def watch_task(orchestrator: ScrapeOrchestrator, task_id: str, timeout: float, disable: bool) -> None:
    """Show a progress bar until the task leaves running/paused."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    with tqdm(total=100, desc="Scraping", unit="%", disable=disable,
              bar_format="{l_bar}{bar}| {n:.1f}/{total}%") as bar:
        while True:
            status = orchestrator.get_task_status(task_id)
            bar.n = status.progress
            bar.set_postfix(state=status.state.value, items=status.items_processed)
            bar.refresh()
            if status.state not in (TaskState.RUNNING, TaskState.PAUSED):
                break
            if loop.time() >= deadline:
                raise asyncio.TimeoutError(f"Task {task_id} did not finish within {timeout}s")
            await asyncio.sleep(STATUS_POLL_INTERVAL)


async def run_scrape(args, logging_manager: LoggingManager) -> int:
    config = OrchestratorConfig.from_env(data_directory=args.data_dir)
    orchestrator = ScrapeOrchestrator(config=config, provider=create_provider(logging_manager, config))

    try:
        if args.proxy_file:
            text = Path(args.proxy_file).read_text(encoding='utf-8')
            imported = await orchestrator.proxy_pool.import_proxies(text)
            logging_manager.logger.info(f"Imported {imported} proxies from {args.proxy_file}")

        task_id = orchestrator.create_task(build_task_options(args))
        await orchestrator.start_task(task_id)

        try:
            await watch_task(orchestrator, task_id, args.timeout, disable=not sys.stdout.isatty())
        except asyncio.TimeoutError as e:
            logging_manager.log_error(e, "Timed out")
            await orchestrator.stop_task(task_id)

        status = orchestrator.get_task_status(task_id)
        print(f"\nTask {task_id}: {colored_state(status.state)} via {status.method.value}, "
              f"{status.items_processed} items")
        for entry in orchestrator.get_task(task_id).errors:
            print(f"{Fore.RED}  [{entry.method}] {entry.message}{Style.RESET_ALL}")

        items = orchestrator.get_task_results(task_id)
        print_items(items, args.format)

        if args.output and status.state == TaskState.COMPLETED:
            export_format = Path(args.output).suffix.lstrip('.') or 'json'
            path = orchestrator.result_sink.export_results(task_id, export_format, args.output)
            print(f"{Fore.GREEN}Exported results to {path}{Style.RESET_ALL}")

        return 0 if status.state == TaskState.COMPLETED else 1
    finally:
        await orchestrator.close()


def handle_scrape_command(args, logging_manager: LoggingManager) -> int:
    """Handle the scrape command."""
    logging_manager.log_command_start(
        "scrape",
        url=args.url,
        method=args.method,
        evasion=args.evasion,
        output=args.output
    )
    try:
        exit_code = asyncio.run(run_scrape(args, logging_manager))
    except ValueError as e:
        logging_manager.log_error(e, "Configuration error")
        return 1
    except FileNotFoundError as e:
        logging_manager.log_error(e, "File not found")
        return 1
    except OrchestratorError as e:
        logging_manager.log_error(e, "Scrape failed")
        return 1

    logging_manager.log_command_end("scrape", success=exit_code == 0)
    return exit_code


def handle_tasks_command(args, logging_manager: LoggingManager) -> int:
    """Handle the tasks command."""
    config = OrchestratorConfig.from_env(data_directory=args.data_dir)
    store = TaskStore(str(Path(config.data_directory) / "tasks.json"))
    definitions = store.load_all()

    if not definitions:
        print("No saved tasks")
        return 0

    rows = [
        {
            'id': definition['id'],
            'name': definition.get('name'),
            'target_url': definition.get('target_url'),
            'method': (definition.get('config') or {}).get('method') or 'auto',
            'last_run': definition.get('last_run') or '-'
        }
        for definition in definitions
    ]
    print(tabulate(rows, headers='keys', tablefmt='grid'))
    return 0


def handle_results_command(args, logging_manager: LoggingManager) -> int:
    """Handle the results command."""
    config = OrchestratorConfig.from_env(data_directory=args.data_dir)
    sink = FileResultSink(SinkConfig(base_directory=str(Path(config.data_directory) / "results")))

    if args.history:
        history = sink.get_results_history(args.task_id)
        if not history:
            print(f"{Fore.YELLOW}No results stored for task {args.task_id}{Style.RESET_ALL}")
            return 1
        print(tabulate(history, headers='keys', tablefmt='grid'))
        return 0

    if args.export:
        try:
            path = sink.export_results(args.task_id, args.export, args.output)
        except ValueError as e:
            logging_manager.log_error(e, "Export failed")
            return 1
        print(f"{Fore.GREEN}Exported results to {path}{Style.RESET_ALL}")
        return 0

    items = sink.get_results(args.task_id)
    if items is None:
        print(f"{Fore.YELLOW}No results stored for task {args.task_id}{Style.RESET_ALL}")
        return 1
    print_items(items, args.format)
    return 0


async def probe_proxies(text: str, proxy_type: ProxyType, provider: Optional[str]) -> List[Dict[str, Any]]:
    pool = ProxyPool()
    try:
        await pool.import_proxies(text, proxy_type=proxy_type, provider=provider, probe=True)
        return [
            {
                'url': proxy.url,
                'status': proxy.status.value,
                'country': proxy.country or '-',
                'response_time_ms': round(proxy.response_time, 1) if proxy.response_time else '-',
                'error': proxy.last_error or ''
            }
            for proxy in pool.get_all()
        ]
    finally:
        await pool.close()


def handle_import_proxies_command(args, logging_manager: LoggingManager) -> int:
    """Handle the import-proxies command."""
    try:
        text = Path(args.file).read_text(encoding='utf-8')
    except FileNotFoundError as e:
        logging_manager.log_error(e, "File not found")
        return 1

    lines = [line.strip() for line in text.splitlines() if line.strip() and not line.strip().startswith('#')]
    invalid = [line for line in lines if parse_proxy_line(line) is None]
    print(f"Valid proxies: {Fore.GREEN}{len(lines) - len(invalid)}{Style.RESET_ALL}")
    if invalid:
        print(f"Invalid lines: {Fore.RED}{len(invalid)}{Style.RESET_ALL}")
        for line in invalid:
            print(f"  - {line}")

    if args.probe:
        rows = asyncio.run(probe_proxies(text, ProxyType(args.type), args.provider))
        print(tabulate(rows, headers='keys', tablefmt='grid'))

    return 0 if not invalid else 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI application."""
    parser = create_parser()
    logging_manager = create_logging_manager()
    args = None

    try:
        args = parser.parse_args(argv)
        logging_manager.setup_from_verbose_flag(args.verbose, args.log_file)

        if not args.command:
            parser.print_help()
            return 1

        if args.command == 'scrape':
            return handle_scrape_command(args, logging_manager)
        elif args.command == 'tasks':
            return handle_tasks_command(args, logging_manager)
        elif args.command == 'results':
            return handle_results_command(args, logging_manager)
        elif args.command == 'import-proxies':
            return handle_import_proxies_command(args, logging_manager)
        else:
            logging_manager.log_error(Exception(f"Unknown command: {args.command}"))
            return 1

    except KeyboardInterrupt:
        if logging_manager.logger:
            logging_manager.logger.info("Operation cancelled by user")
        else:
            print("Operation cancelled by user")
        return 130
    except Exception as e:
        if logging_manager.logger:
            logging_manager.log_error(e, "An error occurred")
            if args is not None and args.verbose:
                logging_manager.logger.exception("Full traceback:")
        else:
            print(f"An error occurred: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
