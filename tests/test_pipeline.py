"""
Tests for the display row pipeline (fpf/pipeline.py).
"""

from fpf.config import Settings
from fpf.dispatch import Dispatcher
from fpf.models import Candidate
from fpf.pipeline import build_display_rows, parse_rows, process_rows, render_rows, write_rows


def make_dispatcher(make_store, registry, *adapters, **overrides):
    settings = Settings(bypass_query_cache=True, **overrides)
    return Dispatcher(make_store(settings), registry(*adapters), settings)


class TestProcessRows:
    """Tests for merge, markers, ranking and limit working together."""

    def test_exact_match_scenario(self, make_store, registry):
        """Test the exact match leads, the duplicate collapses and the limit applies."""
        dispatcher = make_dispatcher(make_store, registry, query_result_limit=2, skip_installed_markers=True)
        rows = [
            Candidate("apt", "z-ripgrep", "late"),
            Candidate("apt", "ripgrep", "target"),
            Candidate("apt", "ripgrep", "duplicate"),
            Candidate("bun", "rg", "alias"),
        ]
        result = process_rows("ripgrep", ["apt", "bun"], rows, dispatcher)
        assert result == [
            Candidate("apt", "ripgrep", "  duplicate"),
            Candidate("apt", "z-ripgrep", "  late"),
        ]

    def test_markers_applied(self, make_store, registry, fake_adapter):
        """Test installed rows carry the star marker."""
        adapter = fake_adapter("apt", installed=["jq"])
        dispatcher = make_dispatcher(make_store, registry, adapter)
        rows = [Candidate("apt", "jq", "json"), Candidate("apt", "jqp", "playground")]
        result = process_rows("jq", ["apt"], rows, dispatcher)
        assert [row.description for row in result] == ["* json", "  playground"]

    def test_empty_query_multi_backend_skips_lookup(self, make_store, registry, fake_adapter):
        """Test empty multi-backend queries never fetch installed sets."""
        apt = fake_adapter("apt", installed=["jq"])
        npm = fake_adapter("npm", installed=["jq"])
        dispatcher = make_dispatcher(make_store, registry, apt, npm)
        rows = [Candidate("apt", "jq"), Candidate("npm", "jq")]
        result = process_rows("", ["apt", "npm"], rows, dispatcher)
        assert apt.installed_calls == npm.installed_calls == 0
        assert all(row.description.startswith("  ") for row in result)

    def test_candidate_cap_before_ranking(self, make_store, registry):
        """Test the round-robin cap keeps every backend represented."""
        dispatcher = make_dispatcher(make_store, registry, rank_candidate_limit=2, skip_installed_markers=True)
        rows = [Candidate("apt", f"tool{i}") for i in range(5)] + [Candidate("npm", "tool9")]
        result = process_rows("tool", ["apt", "npm"], rows, dispatcher)
        assert sorted(row.manager for row in result) == ["apt", "npm"]


class TestBuildDisplayRows:
    """Tests for the full collect-to-rank path."""

    def test_end_to_end(self, make_store, registry, fake_adapter):
        """Test rows from two backends are merged and ranked."""
        apt = fake_adapter("apt", rows=[("ripgrep", "recursive grep"), ("grep", "pattern search")])
        npm = fake_adapter("npm", rows=[("ripgrep-js", "bindings")])
        dispatcher = make_dispatcher(make_store, registry, apt, npm, skip_installed_markers=True)
        rows = build_display_rows("ripgrep", ["apt", "npm"], dispatcher)
        assert [(row.manager, row.package) for row in rows] == [
            ("apt", "ripgrep"),
            ("npm", "ripgrep-js"),
            ("apt", "grep"),
        ]

    def test_no_rows(self, make_store, registry, fake_adapter):
        """Test no backend output yields no rows and no marker lookups."""
        apt = fake_adapter("apt", installed=["jq"])
        dispatcher = make_dispatcher(make_store, registry, apt)
        assert build_display_rows("jq", ["apt"], dispatcher) == []
        assert apt.installed_calls == 0


class TestRowFiles:
    """Tests for the selector row format."""

    def test_render(self):
        """Test rows render as tab-separated lines."""
        text = render_rows([Candidate("apt", "jq", "* json"), Candidate("npm", "rg", "")])
        assert text == "apt\tjq\t* json\nnpm\trg\t-\n"

    def test_parse_skips_short_lines(self):
        """Test blank and single-field lines are ignored."""
        rows = parse_rows("apt\tjq\tjson\r\n\nnoise\nnpm\trg\n")
        assert rows == [Candidate("apt", "jq", "json"), Candidate("npm", "rg", "-")]

    def test_description_keeps_tabs(self):
        """Test a description containing tabs stays in the third field."""
        assert parse_rows("apt\tjq\ta\tb\n") == [Candidate("apt", "jq", "a\tb")]

    def test_write_rows(self, tmp_path):
        """Test rows are written atomically with no temp files left over."""
        target = tmp_path / "display.tsv"
        write_rows(target, [Candidate("apt", "jq", "  json")])
        assert target.read_text() == "apt\tjq\t  json\n"
        assert [p.name for p in tmp_path.iterdir()] == ["display.tsv"]
