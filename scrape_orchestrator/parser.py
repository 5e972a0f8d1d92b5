"""
Command Parser Module

Handles command-line argument parsing for the scrape orchestrator CLI.
"""

import argparse
from typing import Optional, List, Dict, Any

from .config import EvasionLevel, ScrapingMethod


class CommandParser:
    """Handles command-line argument parsing for the orchestrator CLI."""

    def __init__(self):
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create and configure the argument parser."""
        parser = argparse.ArgumentParser(
            prog="scrape-orchestrator",
            description="Run scraping tasks with rotating identities, proxies and method fallback",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  scrape-orchestrator scrape --url https://example.com --selector title=h1
  scrape-orchestrator scrape --url https://example.com --list-selector price=.price --evasion maximum
  scrape-orchestrator tasks
  scrape-orchestrator results <task-id> --export csv
  scrape-orchestrator import-proxies proxies.txt --type residential
            """
        )

        parser.add_argument(
            '--verbose', '-v',
            action='store_true',
            help='Enable verbose logging'
        )
        parser.add_argument(
            '--data-dir',
            help='Directory for task definitions and results (default: $SCRAPER_DATA_DIR or ./data)'
        )
        parser.add_argument(
            '--log-file',
            help='Also write logs to this file'
        )

        subparsers = parser.add_subparsers(
            dest='command',
            help='Available commands'
        )

        self._add_scrape_parser(subparsers)
        self._add_tasks_parser(subparsers)
        self._add_results_parser(subparsers)
        self._add_import_proxies_parser(subparsers)

        return parser

    def _add_scrape_parser(self, subparsers: argparse._SubParsersAction) -> None:
        """Add the scrape command parser."""
        scrape_parser = subparsers.add_parser(
            'scrape',
            help='Create a task, run it and print the results'
        )
        scrape_parser.add_argument('--url', '-u', required=True, help='Target URL')
        scrape_parser.add_argument('--name', '-n', help='Task name (defaults to the URL host)')
        scrape_parser.add_argument(
            '--method', '-m',
            choices=[method.value for method in ScrapingMethod],
            help='Preferred scraping method'
        )
        scrape_parser.add_argument(
            '--selector', '-s',
            action='append',
            default=[],
            metavar='NAME=SELECTOR',
            help='CSS selector for a single value (repeatable)'
        )
        scrape_parser.add_argument(
            '--list-selector',
            action='append',
            default=[],
            metavar='NAME=SELECTOR',
            help='CSS selector matching many values, one item per match (repeatable)'
        )
        scrape_parser.add_argument(
            '--visual-selector',
            action='append',
            default=[],
            metavar='NAME=DESCRIPTION',
            help='Field described visually; requires a vision advisor (repeatable)'
        )
        scrape_parser.add_argument('--wait-for', help='Selector to wait for after navigation')
        scrape_parser.add_argument(
            '--evasion',
            choices=[level.value for level in EvasionLevel],
            help='Evasion level'
        )
        scrape_parser.add_argument('--no-proxy', action='store_true', help='Do not lease a proxy')
        scrape_parser.add_argument('--proxy-file', help='Import proxies from this file before running')
        scrape_parser.add_argument('--proxy-country', help='Only use proxies from this country')
        scrape_parser.add_argument('--max-pages', type=int, help='Follow ?page=N pagination up to this many pages')
        scrape_parser.add_argument('--timeout', type=float, default=600.0, help='Seconds to wait for the task (default: 600)')
        scrape_parser.add_argument(
            '--format', '-f',
            choices=['table', 'json'],
            default='table',
            help='Output format (default: table)'
        )
        scrape_parser.add_argument('--output', '-o', help='Export results to this file (.json, .csv or .xlsx)')

    def _add_tasks_parser(self, subparsers: argparse._SubParsersAction) -> None:
        """Add the tasks command parser."""
        subparsers.add_parser(
            'tasks',
            help='List saved task definitions'
        )

    def _add_results_parser(self, subparsers: argparse._SubParsersAction) -> None:
        """Add the results command parser."""
        results_parser = subparsers.add_parser(
            'results',
            help='Show stored results of a task'
        )
        results_parser.add_argument('task_id', help='Task identifier')
        results_parser.add_argument(
            '--format', '-f',
            choices=['table', 'json'],
            default='table',
            help='Output format (default: table)'
        )
        results_parser.add_argument('--history', action='store_true', help='List every stored run')
        results_parser.add_argument(
            '--export',
            choices=['json', 'csv', 'xlsx'],
            help='Export the latest results in this format'
        )
        results_parser.add_argument('--output', '-o', help='Export destination')

    def _add_import_proxies_parser(self, subparsers: argparse._SubParsersAction) -> None:
        """Add the import-proxies command parser."""
        import_parser = subparsers.add_parser(
            'import-proxies',
            help='Validate a proxy list file (host:port[:user:pass] per line)'
        )
        import_parser.add_argument('file', help='Proxy list file')
        import_parser.add_argument(
            '--type', '-t',
            choices=['residential', 'datacenter', 'mobile', 'custom'],
            default='datacenter',
            help='Proxy type (default: datacenter)'
        )
        import_parser.add_argument('--provider', help='Proxy provider name')
        import_parser.add_argument('--probe', action='store_true', help='Probe every proxy and report its status')

    def parse_args(self, args: Optional[List[str]] = None) -> argparse.Namespace:
        """Parse command-line arguments."""
        return self.parser.parse_args(args)

    def print_help(self) -> None:
        """Print the help message."""
        self.parser.print_help()


def parse_selector_args(values: List[str], multiple: bool = False, selector_type: str = 'css') -> List[Dict[str, Any]]:
    """
    Turn ``NAME=SELECTOR`` arguments into selector options.

    Raises:
        ValueError: If an argument has no ``=``
    """
    selectors = []
    for value in values:
        name, sep, selector = value.partition('=')
        if not sep or not name.strip() or not selector.strip():
            raise ValueError(f"Selector must look like NAME=SELECTOR: {value}")
        selectors.append({
            'name': name.strip(),
            'selector': selector.strip(),
            'selector_type': selector_type,
            'multiple': multiple
        })
    return selectors


def create_parser() -> CommandParser:
    """Create and return a new command parser instance."""
    return CommandParser()
