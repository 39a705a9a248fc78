"""
Tests for the ranking engine (fpf/rank.py).
"""

from fpf.models import Candidate
from fpf.rank import (
    TIER_EXACT,
    TIER_NO_MATCH,
    apply_result_limit,
    exact_query_candidates,
    has_exact_match,
    normalize_alnum,
    rank_candidates,
    round_robin_cap,
    score_candidates,
    split_alnum_tokens,
)


def packages(rows):
    return [(row.manager, row.package) for row in rows]


class TestExactQueryCandidates:
    """Tests for exact-match query forms."""

    def test_multi_word_forms(self):
        """Test multi-word query yields compact, hyphen, underscore and joined forms."""
        assert exact_query_candidates("foo bar") == ["foo bar", "foo-bar", "foo_bar", "foobar"]

    def test_single_word(self):
        """Test single word yields only itself."""
        assert exact_query_candidates("ripgrep") == ["ripgrep"]

    def test_whitespace_collapsed(self):
        """Test surrounding and repeated whitespace is collapsed."""
        assert exact_query_candidates("  foo   bar ")[0] == "foo bar"

    def test_empty_query(self):
        """Test blank query yields no forms."""
        assert exact_query_candidates("   ") == []

    def test_no_duplicates_or_empty(self):
        """Test forms are unique and non-empty."""
        forms = exact_query_candidates("a b")
        assert len(forms) == len(set(forms))
        assert all(forms)


class TestTokenizing:
    """Tests for alphanumeric normalization helpers."""

    def test_normalize_alnum(self):
        """Test separators are stripped."""
        assert normalize_alnum("foo-bar_1.x") == "foobar1x"

    def test_split_alnum_tokens(self):
        """Test tokens are alphanumeric runs."""
        assert split_alnum_tokens("foo-bar_1 x") == ["foo", "bar", "1", "x"]

    def test_split_empty(self):
        """Test empty input yields no tokens."""
        assert split_alnum_tokens("--") == []


class TestRankCandidates:
    """Tests for tier ordering and tie-breaks."""

    def test_exact_match_first(self):
        """Test exact name match outranks prefix, substring and description matches."""
        rows = [
            Candidate("apt", "z-ripgrep", "late"),
            Candidate("apt", "ripgrep-all", "rg wrapper"),
            Candidate("apt", "rg", "ripgrep alias"),
            Candidate("apt", "ripgrep", "target"),
        ]
        ranked = rank_candidates("ripgrep", rows)
        assert ranked[0].package == "ripgrep"

    def test_tier_order_without_exact(self):
        """Test prefix, substring, description and no-match tiers in order."""
        rows = [
            Candidate("apt", "foo", "bar"),
            Candidate("apt", "rg", "search tool like ripgrep"),
            Candidate("apt", "zripgrep", "-"),
            Candidate("apt", "ripgrep-all", "-"),
        ]
        ranked = rank_candidates("ripgrep", rows)
        assert [row.package for row in ranked] == ["ripgrep-all", "zripgrep", "rg", "foo"]

    def test_multi_token_tiers(self):
        """Test prefix beats all-tokens which beats any-token."""
        rows = [
            Candidate("apt", "foo-baz", "-"),
            Candidate("apt", "bar-foo", "-"),
            Candidate("apt", "foobar-x", "-"),
        ]
        ranked = rank_candidates("foo bar", rows)
        assert [row.package for row in ranked] == ["foobar-x", "bar-foo", "foo-baz"]

    def test_noise_penalty(self):
        """Test scaffolding descriptions are demoted."""
        rows = [
            Candidate("apt", "reactx", "a plugin"),
            Candidate("apt", "reacty", "a library"),
        ]
        ranked = rank_candidates("react", rows)
        assert [row.package for row in ranked] == ["reacty", "reactx"]

    def test_longer_name_penalty_with_exact(self):
        """Test names with extra tokens drop when an exact match exists."""
        rows = [Candidate("apt", "jq", "-"), Candidate("apt", "jq-extra", "-")]
        scored = {s.candidate.package: s.score for s in score_candidates("jq", rows, has_exact=True)}
        assert scored["jq"] == TIER_EXACT
        assert scored["jq-extra"] == 1 + 5

    def test_manager_bias(self):
        """Test system managers win ties over npm and bun."""
        rows = [
            Candidate("npm", "jq", "x"),
            Candidate("bun", "jq", "x"),
            Candidate("apt", "jq", "x"),
        ]
        ranked = rank_candidates("jq", rows)
        assert [row.manager for row in ranked] == ["apt", "bun", "npm"]

    def test_shorter_name_then_lexical(self):
        """Test shorter names then lowercase names break remaining ties."""
        rows = [
            Candidate("apt", "abcd1", "-"),
            Candidate("apt", "abc2", "-"),
            Candidate("apt", "abc1", "-"),
        ]
        ranked = rank_candidates("abc", rows)
        assert [row.package for row in ranked] == ["abc1", "abc2", "abcd1"]

    def test_blank_query_unchanged(self):
        """Test blank query returns rows in input order."""
        rows = [Candidate("apt", "b"), Candidate("apt", "a")]
        assert rank_candidates("  ", rows) == rows

    def test_idempotent(self):
        """Test ranking the same input twice yields identical order."""
        rows = [Candidate("apt", name, "-") for name in ("rg", "ripgrep", "grep", "ripgrep-all")]
        assert rank_candidates("ripgrep", rows) == rank_candidates("ripgrep", rows)

    def test_independent_of_input_order(self):
        """Test ranking is a total order regardless of input order."""
        rows = [
            Candidate("npm", "ripgrep", "-"),
            Candidate("apt", "ripgrep", "-"),
            Candidate("apt", "rg", "ripgrep"),
            Candidate("bun", "ripgrep-js", "-"),
        ]
        assert rank_candidates("ripgrep", rows) == rank_candidates("ripgrep", list(reversed(rows)))

    def test_no_match_tier(self):
        """Test unrelated rows get the no-match tier."""
        scored = score_candidates("zzz", [Candidate("apt", "foo", "bar")], has_exact=False)
        assert scored[0].score == TIER_NO_MATCH

    def test_has_exact_match_case_insensitive(self):
        """Test exact detection ignores case and accepts joined forms."""
        assert has_exact_match("Foo Bar", [Candidate("apt", "foo-bar")])
        assert not has_exact_match("foo bar", [Candidate("apt", "foo-bar-baz")])


class TestRoundRobinCap:
    """Tests for diversity-preserving capping."""

    def rows(self):
        out = []
        for manager in ("apt", "brew", "npm"):
            out.extend(Candidate(manager, f"{manager}-{i}") for i in range(4))
        return out

    def test_first_rows_one_per_backend(self):
        """Test the first N rows hold one row from each backend in order."""
        capped = round_robin_cap(self.rows(), 6, ["apt", "brew", "npm"])
        assert len(capped) == 6
        assert [row.manager for row in capped[:3]] == ["apt", "brew", "npm"]
        assert packages(capped[3:]) == [("apt", "apt-1"), ("brew", "brew-1"), ("npm", "npm-1")]

    def test_explicit_order(self):
        """Test rotation follows the given backend order."""
        capped = round_robin_cap(self.rows(), 3, ["npm", "apt", "brew"])
        assert [row.manager for row in capped] == ["npm", "apt", "brew"]

    def test_exhausted_backend_skipped(self):
        """Test rotation continues past backends with no rows left."""
        rows = [Candidate("apt", "a1"), Candidate("npm", "n1"), Candidate("npm", "n2"), Candidate("npm", "n3")]
        capped = round_robin_cap(rows, 3)
        assert packages(capped) == [("apt", "a1"), ("npm", "n1"), ("npm", "n2")]

    def test_within_budget_unchanged(self):
        """Test lists within budget are returned unchanged."""
        rows = self.rows()
        assert round_robin_cap(rows, 100) == rows

    def test_non_positive_budget(self):
        """Test budget 0 disables capping."""
        rows = self.rows()
        assert round_robin_cap(rows, 0) == rows


class TestApplyResultLimit:
    """Tests for the post-ranking result limit."""

    def test_limit_applied(self):
        """Test rows are truncated for a real query."""
        rows = [Candidate("apt", str(i)) for i in range(5)]
        assert len(apply_result_limit("q", rows, 2)) == 2

    def test_blank_query_not_limited(self):
        """Test blank queries are never truncated."""
        rows = [Candidate("apt", str(i)) for i in range(5)]
        assert len(apply_result_limit("", rows, 2)) == 5

    def test_zero_limit(self):
        """Test limit 0 keeps every row."""
        rows = [Candidate("apt", str(i)) for i in range(5)]
        assert len(apply_result_limit("q", rows, 0)) == 5
