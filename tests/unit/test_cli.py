"""
Unit tests for the command-line parser and command handlers.
"""

import pytest
import json
from unittest.mock import AsyncMock, patch

from scrape_orchestrator.cli import build_task_options, main
from scrape_orchestrator.parser import create_parser, parse_selector_args
from scrape_orchestrator.result_sink import FileResultSink, SinkConfig
from scrape_orchestrator.robots import RobotsPolicy
from scrape_orchestrator.strategies import ExecutionContext
from scrape_orchestrator.task_store import TaskStore

from conftest import FakeBrowserProvider

pytestmark = pytest.mark.usefixtures("restore_package_logger")


class TestParseSelectorArgs:
    """Test NAME=SELECTOR parsing."""

    def test_parses_pairs(self):
        assert parse_selector_args(["title=h1", "price = .price span"]) == [
            {'name': 'title', 'selector': 'h1', 'selector_type': 'css', 'multiple': False},
            {'name': 'price', 'selector': '.price span', 'selector_type': 'css', 'multiple': False},
        ]

    def test_selector_may_contain_equals(self):
        parsed = parse_selector_args(["link=a[rel=next]"], multiple=True)

        assert parsed[0]['selector'] == 'a[rel=next]'
        assert parsed[0]['multiple'] is True

    @pytest.mark.parametrize("value", ["h1", "=h1", "title="])
    def test_malformed_pairs(self, value):
        with pytest.raises(ValueError, match="NAME=SELECTOR"):
            parse_selector_args([value])


class TestCommandParser:
    """Test argument parsing."""

    def test_scrape_defaults(self):
        args = create_parser().parse_args(["scrape", "--url", "https://example.com"])

        assert args.command == 'scrape'
        assert args.selector == [] and args.list_selector == []
        assert args.timeout == 600.0
        assert args.format == 'table'
        assert args.no_proxy is False

    def test_global_options(self):
        args = create_parser().parse_args(["-v", "--data-dir", "/tmp/x", "tasks"])

        assert args.verbose is True
        assert args.data_dir == "/tmp/x"

    def test_invalid_method_exits(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["scrape", "--url", "https://example.com", "--method", "telepathy"])

    def test_build_task_options(self):
        args = create_parser().parse_args([
            "scrape", "--url", "https://shop.example.com/list",
            "-s", "title=h1", "--list-selector", "item=li.product",
            "--visual-selector", "badge=the green badge",
            "--method", "hybrid", "--evasion", "advanced", "--no-proxy",
            "--proxy-country", "DE", "--max-pages", "3", "--wait-for", "#main"
        ])

        options = build_task_options(args)

        assert options['name'] == 'shop.example.com'
        assert [s['name'] for s in options['selectors']] == ['title', 'item', 'badge']
        assert options['selectors'][1]['multiple'] is True
        assert options['selectors'][2]['selector_type'] == 'visual'
        assert options['method'] == 'hybrid'
        assert options['behavior_settings'] == {'evasion_level': 'advanced'}
        assert options['use_proxy'] is False
        assert options['proxy_country'] == 'DE'
        assert options['pagination'] == {'type': 'page-number', 'max_pages': 3}
        assert options['wait_for_selector'] == '#main'

    def test_build_task_options_minimal(self):
        args = create_parser().parse_args(["scrape", "--url", "https://example.com", "--name", "Home"])

        options = build_task_options(args)

        assert options == {'name': 'Home', 'target_url': 'https://example.com', 'selectors': [], 'use_proxy': True}


class TestMain:
    """Test command dispatch through main()."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage:" in capsys.readouterr().out

    def test_tasks_command_empty(self, tmp_path, capsys):
        assert main(["--data-dir", str(tmp_path), "tasks"]) == 0
        assert "No saved tasks" in capsys.readouterr().out

    def test_tasks_command_lists_definitions(self, tmp_path, capsys):
        TaskStore(str(tmp_path / "tasks.json")).save({
            'id': 'task-1', 'name': 'Shop', 'target_url': 'https://shop.example.com',
            'config': {'method': 'api-client'}
        })

        assert main(["--data-dir", str(tmp_path), "tasks"]) == 0

        out = capsys.readouterr().out
        assert "task-1" in out
        assert "api-client" in out

    def test_results_command(self, tmp_path, capsys):
        FileResultSink(SinkConfig(base_directory=str(tmp_path / "results"))).save_results(
            "task-1", [{'title': 'Hello'}]
        )

        assert main(["--data-dir", str(tmp_path), "results", "task-1", "--format", "json"]) == 0

        out = capsys.readouterr().out
        assert json.loads(out[out.index('['):out.rindex(']') + 1]) == [{'title': 'Hello'}]

    def test_results_command_missing(self, tmp_path, capsys):
        assert main(["--data-dir", str(tmp_path), "results", "nope"]) == 1
        assert "No results stored" in capsys.readouterr().out

    def test_results_export(self, tmp_path):
        FileResultSink(SinkConfig(base_directory=str(tmp_path / "results"))).save_results(
            "task-1", [{'title': 'Hello'}]
        )
        output = tmp_path / "out.csv"

        assert main(["--data-dir", str(tmp_path), "results", "task-1", "--export", "csv", "-o", str(output)]) == 0
        assert output.read_text(encoding='utf-8').splitlines() == ['title', 'Hello']

    def test_import_proxies_reports_invalid_lines(self, tmp_path, capsys):
        proxy_file = tmp_path / "proxies.txt"
        proxy_file.write_text("# residential\n10.0.0.1:8080\n10.0.0.2:3128:user:pass\nnot-a-proxy\n")

        assert main(["import-proxies", str(proxy_file)]) == 1

        out = capsys.readouterr().out
        assert "Valid proxies" in out and "2" in out
        assert "not-a-proxy" in out

    def test_import_proxies_missing_file(self, tmp_path):
        assert main(["import-proxies", str(tmp_path / "missing.txt")]) == 1

    def test_scrape_command_runs_task(self, tmp_path, capsys):
        provider = FakeBrowserProvider(extract={'h1': 'Welcome', 'li.product': ['alpha', 'beta']})
        output = tmp_path / "out.json"

        with patch('scrape_orchestrator.cli.create_provider', return_value=provider), \
                patch.object(ExecutionContext, 'human_delay', new=AsyncMock()), \
                patch.object(RobotsPolicy, 'allowed', new=AsyncMock(return_value=True)):
            exit_code = main([
                "--data-dir", str(tmp_path), "scrape", "--url", "https://shop.example.com",
                "-s", "title=h1", "--list-selector", "product=li.product", "--no-proxy",
                "--timeout", "10", "-o", str(output)
            ])

        assert exit_code == 0
        assert "completed" in capsys.readouterr().out
        assert json.loads(output.read_text(encoding='utf-8')) == [
            {'title': 'Welcome', 'product': 'alpha'},
            {'title': 'Welcome', 'product': 'beta'},
        ]
        assert len(TaskStore(str(tmp_path / "tasks.json")).load_all()) == 1

    def test_scrape_command_without_browser_fails(self, tmp_path):
        with patch('scrape_orchestrator.cli.create_provider', return_value=None):
            exit_code = main([
                "--data-dir", str(tmp_path), "scrape", "--url", "https://shop.example.com",
                "--no-proxy", "--timeout", "10"
            ])

        assert exit_code == 1

    def test_scrape_command_rejects_bad_selector(self, tmp_path):
        with patch('scrape_orchestrator.cli.create_provider', return_value=None):
            assert main(["--data-dir", str(tmp_path), "scrape", "--url", "https://example.com", "-s", "oops"]) == 1
