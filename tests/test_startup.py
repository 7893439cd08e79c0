"""Tests for the command line interface."""

import json
from pathlib import Path

from cognitive_workflow.config import EmbeddingProviderType, get_testing_config
from cognitive_workflow.startup import create_argument_parser, load_configuration, route_once, run_catalog_command

SAMPLE_CATALOG = Path(__file__).resolve().parent.parent / "data" / "sample_catalog.json"


class TestCommandLine:
    def test_overrides_apply_on_top_of_preset(self):
        args = create_argument_parser().parse_args(["--env", "testing", "--port", "9100", "--debug", "config", "show"])

        config = load_configuration(args)

        assert config.port == 9100
        assert config.embedding_provider == EmbeddingProviderType.HASHING
        assert args.command == "config"
        assert args.config_command == "show"

    def test_route_subcommand_arguments(self):
        args = create_argument_parser().parse_args(["route", "summarize this", "--report"])

        assert args.text == "summarize this"
        assert args.report is True

    async def test_route_once_with_empty_catalog_is_no_match(self, capsys):
        exit_code = await route_once(get_testing_config(), "summarize this")

        out = capsys.readouterr().out
        body = json.loads(out[out.index("{\n"):])
        assert exit_code == 0
        assert body["outcome"] == "no_match"
        assert body["total_tokens"] == 0

    def test_catalog_activate_pins_and_show_marks_it(self, tmp_path, capsys):
        config = get_testing_config().model_copy(update={"database_url": f"sqlite:///{tmp_path / 'catalog.db'}"})
        parser = create_argument_parser()

        run_catalog_command("import", parser.parse_args(["catalog", "import", str(SAMPLE_CATALOG)]), config)
        run_catalog_command("activate", parser.parse_args(["catalog", "activate", "count", "1.0.0"]), config)
        run_catalog_command("show", parser.parse_args(["catalog", "show"]), config)

        out = capsys.readouterr().out
        assert "Pinned count to v1.0.0" in out
        assert "count v1.0.0 (enabled, pinned)" in out
        assert "normalize v1.0.0 (enabled)" in out
