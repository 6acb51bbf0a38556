"""
Tests for the structured query compiler.
"""

import re

import pytest

from askgraph.models import AttributeCondition, AttributeValue, Condition, ConditionGroup


def text(value, **kwargs):
    return Condition(kind="text", value=value, **kwargs)


def ref(title, **kwargs):
    return Condition(kind="node_ref", value=title, **kwargs)


def find_clauses(clauses, kind):
    """Collect clauses of a type anywhere in a clause tree."""
    found = []
    stack = list(clauses)
    while stack:
        clause = stack.pop()
        if isinstance(clause, kind):
            found.append(clause)
        for attr in ("clauses", "branches"):
            stack.extend(getattr(clause, attr, ()))
    return found


CORPUS = [
    "Review budget for [[Q3 Planning]]",
    "#[[Q3 Planning]] approved",
    "Q3 Planning:: yes",
    "Q3 Planning in prose only",
    "learning C++ today",
    "BUDGET in capitals",
    "nothing relevant",
    "embed ((abc-1)) here",
    "",
]


# ============== Tests for fold_or_to_regex() ==============

class TestFoldOrToRegex:
    """Tests for OR-to-regex folding."""

    def test_fold_matches_any_original(self):
        """Test the folded regex matches exactly when some original condition does."""
        from askgraph.compiler import condition_pattern, fold_or_to_regex
        from askgraph.utils import CASE_FLAG_PREFIX

        conditions = [
            text("budget"),
            text("C++"),
            ref("Q3 Planning"),
            Condition(kind="entry_ref", value="abc-1"),
        ]
        folded = fold_or_to_regex(conditions)
        assert folded.kind == "regex"
        for sample in CORPUS:
            expected = any(re.search(CASE_FLAG_PREFIX + condition_pattern(c), sample) for c in conditions)
            assert bool(re.search(folded.value, sample)) == expected, sample

    def test_fold_keeps_max_weight(self):
        """Test the folded condition carries the strongest weight."""
        from askgraph.compiler import fold_or_to_regex

        folded = fold_or_to_regex([text("a", weight=0.49), text("b", weight=0.7)])
        assert folded.weight == 0.7

    def test_duplicate_patterns_collapse(self):
        """Test identical alternatives appear once."""
        from askgraph.compiler import fold_or_to_regex

        folded = fold_or_to_regex([text("kickoff"), text("kickoff", weight=0.5)])
        assert folded.value == "(?i)(?:kickoff)"

    @pytest.mark.parametrize("condition", [
        text("draft", negated=True),
        text("budget draft", match_mode="exact"),
        Condition(kind="regex", value="bud.*"),
    ])
    def test_rejects_unfoldable(self, condition):
        """Test negated, exact and regex conditions are refused."""
        from askgraph.compiler import fold_or_to_regex
        from askgraph.utils import CompilationError

        with pytest.raises(CompilationError):
            fold_or_to_regex([text("budget"), condition])

    def test_single_regex_passes_through(self):
        """Test a lone regex is returned unchanged when allowed."""
        from askgraph.compiler import fold_or_to_regex

        condition = Condition(kind="regex", value="bud.*")
        assert fold_or_to_regex([condition], allow_regex=True) is condition


# ============== Tests for normalize_groups() ==============

class TestNormalizeGroups:
    """Tests for condition tree normalization."""

    def test_flattens_same_combinator(self):
        """Test nested AND groups merge into their parent."""
        from askgraph.compiler import normalize_groups

        tree = ConditionGroup(combinator="AND", children=[
            text("a"),
            ConditionGroup(combinator="AND", children=[text("b"), text("c")]),
        ])
        result = normalize_groups(tree)
        assert result.combinator == "AND"
        assert [c.value for c in result.children] == ["a", "b", "c"]

    def test_duplicates_merged_with_note(self):
        """Test duplicate conditions merge and the rewrite is reported."""
        from askgraph.compiler import normalize_groups

        notes = []
        result = normalize_groups(ConditionGroup(children=[text("a"), text("b"), text("a")]), notes)
        assert [c.value for c in result.children] == ["a", "b"]
        assert notes == ["duplicate condition a merged"]

    def test_or_group_folds(self):
        """Test an OR of plain terms becomes one regex condition."""
        from askgraph.compiler import normalize_groups

        notes = []
        tree = ConditionGroup(children=[
            text("budget"),
            ConditionGroup(combinator="OR", children=[text("kickoff"), text("draft")]),
        ])
        result = normalize_groups(tree, notes)
        assert result.combinator == "AND"
        folded = result.children[1]
        assert folded.kind == "regex"
        assert folded.value == "(?i)(?:kickoff|draft)"
        assert "2 OR-terms folded into one regex alternation" in notes

    def test_negated_or_member_not_folded(self):
        """Test negated members stay outside the fold."""
        from askgraph.compiler import normalize_groups

        tree = ConditionGroup(combinator="OR", children=[text("a"), text("b"), text("c", negated=True)])
        result = normalize_groups(tree)
        assert result.combinator == "OR"
        assert len(result.children) == 2
        assert result.children[1].negated

    def test_single_condition_wrapped(self):
        """Test a lone condition is returned inside an AND group."""
        from askgraph.compiler import normalize_groups

        result = normalize_groups(ConditionGroup(combinator="OR", children=[text("a")]))
        assert result.combinator == "AND"
        assert result.children == [text("a")]

    def test_empty_tree_rejected(self):
        """Test groups holding only empty groups are errors."""
        from askgraph.compiler import normalize_groups
        from askgraph.utils import CompilationError

        tree = ConditionGroup(children=[ConditionGroup(children=[]), ConditionGroup(combinator="OR", children=[])])
        with pytest.raises(CompilationError):
            normalize_groups(tree)

    def test_attribute_condition_rejected(self):
        """Test attribute conditions cannot appear in a compiled tree."""
        from askgraph.compiler import normalize_groups
        from askgraph.utils import CompilationError

        attr = AttributeCondition(key="Status", values=[AttributeValue(value="Done")])
        with pytest.raises(CompilationError):
            normalize_groups(ConditionGroup.model_construct(combinator="AND", children=[text("a"), attr]))

    def test_deep_nesting(self):
        """Test very deep trees normalize without hitting recursion limits."""
        from askgraph.compiler import normalize_groups

        tree = ConditionGroup(children=[text("leaf")])
        for i in range(3000):
            tree = ConditionGroup(combinator="AND" if i % 2 else "OR", children=[tree])
        result = normalize_groups(tree)
        assert result.children == [text("leaf")]


# ============== Tests for compile_search() ==============

class TestCompileBlockScope:
    """Tests for block-scope compilation."""

    def test_shared_entry_variable(self):
        """Test all conditions bind the same entry."""
        from askgraph.compiler import compile_search
        from askgraph.query import read_query

        plan = compile_search([text("budget"), ref("Q3 Planning")])
        assert plan.scope == "block"
        assert plan.variables == ("?uid", "?content", "?created", "?modified", "?node-title", "?node-uid")
        assert "[?e :entry/refs ?ref-1]" in plan.text
        assert "[(re-find ?pattern-0 ?content)]" in plan.text
        assert "?e-0" not in plan.text
        assert read_query(plan.text).variables == plan.variables

    def test_negated_text_binding_outside_not(self):
        """Test the pattern binding precedes the negated test."""
        from askgraph.compiler import compile_search
        from askgraph.query import FnBinding, Not, Predicate, Var, read_query

        plan = compile_search([text("budget"), text("draft", negated=True)])
        query = read_query(plan.text)
        nots = [c for c in query.where if isinstance(c, Not)]
        assert len(nots) == 1
        assert nots[0].clauses == (Predicate("re-find", (Var("?pattern-1"), Var("?content"))),)
        bindings = [c for c in query.where if isinstance(c, FnBinding) and c.output.name == "?pattern-1"]
        assert bindings and bindings[0].args == ("(?i)draft",)

    def test_negated_reference_uses_not_join(self):
        """Test a negated reference is scoped to the entry."""
        from askgraph.compiler import compile_search

        plan = compile_search([text("budget"), ref("Q3 Planning", negated=True)])
        assert "(not-join [?e]" in plan.text

    def test_mixed_or_uses_or_join(self):
        """Test an unfoldable OR becomes an or-join over the entry."""
        from askgraph.compiler import compile_search
        from askgraph.query import OrJoin, read_query

        plan = compile_search([text("a"), text("b", negated=True)], combinator="OR")
        ors = find_clauses(read_query(plan.text).where, OrJoin)
        assert len(ors) == 1
        assert [v.name for v in ors[0].join_vars] == ["?e", "?content"]
        assert len(ors[0].branches) == 2

    def test_scope_clauses(self):
        """Test restriction, daily exclusion and exclude_id clauses."""
        from askgraph.compiler import compile_search
        from askgraph.models import ResultScope

        plan = compile_search(
            [text("budget")],
            include_daily=False,
            exclude_id="f3",
            restrict=ResultScope(node_ids=("fin",), entry_ids=("f2", "f1")),
        )
        assert '[(contains? #{"f1" "f2"} ?uid)]' in plan.text
        assert "?daily-pattern" in plan.text
        assert '[(not= ?uid "f3")]' in plan.text

    def test_node_restriction_without_entry_ids(self):
        """Test node ids restrict when no entry ids are known."""
        from askgraph.compiler import compile_search
        from askgraph.models import ResultScope

        plan = compile_search([text("budget")], restrict=ResultScope(node_ids=("meet", "fin")))
        assert '[(contains? #{"fin" "meet"} ?node-uid)]' in plan.text

    def test_hostile_values_escaped(self):
        """Test quotes and brackets in values cannot break the query."""
        from askgraph.compiler import compile_search
        from askgraph.query import read_query

        plan = compile_search([ref('say "hi" ]]'), text('a"b\\c')])
        query = read_query(plan.text)
        assert any(getattr(c, "value", None) == 'say "hi" ]]' for c in query.where)

    def test_bad_entry_uid(self):
        """Test entry references must be plain uids."""
        from askgraph.compiler import compile_search
        from askgraph.utils import CompilationError

        with pytest.raises(CompilationError):
            compile_search([Condition(kind="entry_ref", value="bad uid!")])

    def test_no_conditions(self):
        """Test an empty condition list is refused."""
        from askgraph.compiler import compile_search
        from askgraph.utils import CompilationError

        with pytest.raises(CompilationError):
            compile_search([])

    def test_optimizations_reported(self):
        """Test normalization rewrites appear on the plan."""
        from askgraph.compiler import compile_search

        plan = compile_search([text("kickoff"), text("draft"), text("draft")], combinator="OR")
        assert plan.optimizations == (
            "duplicate condition draft merged",
            "2 OR-terms folded into one regex alternation",
        )


class TestCompileContentScope:
    """Tests for content-scope compilation."""

    def test_per_condition_entry_variables(self):
        """Test each condition binds its own entry within the node."""
        from askgraph.compiler import compile_search

        plan = compile_search([text("budget"), text("kickoff")], scope="content")
        assert plan.variables == ("?node-uid", "?node-title", "?created", "?modified")
        assert "[?e-0 :entry/node ?node]" in plan.text
        assert "[?e-1 :entry/node ?node]" in plan.text
        assert "?content-1" in plan.text

    def test_sub_plans_for_and(self):
        """Test AND plans carry one independent read per positive condition."""
        from askgraph.compiler import compile_search

        plan = compile_search([text("budget"), text("kickoff")], scope="content")
        assert len(plan.sub_plans) == 2
        assert plan.exclusion_plans == ()
        assert "content AND split into 2 node-intersected reads" in plan.optimizations

    def test_negations_become_exclusion_plans(self):
        """Test negated conditions are read positively for subtraction."""
        from askgraph.compiler import compile_search

        plan = compile_search([text("budget"), text("kickoff", negated=True)], scope="content")
        assert len(plan.sub_plans) == 1
        assert len(plan.exclusion_plans) == 1
        assert not plan.exclusion_plans[0].conditions[0].negated
        assert "(not-join [?node]" in plan.text

    def test_single_condition_has_no_sub_plans(self):
        """Test a single condition compiles to one read."""
        from askgraph.compiler import compile_search

        plan = compile_search([text("budget")], scope="content")
        assert plan.sub_plans == ()


class TestAuxiliaryQueries:
    """Tests for hierarchy and attribute reads."""

    def test_attribute_query(self):
        """Test attribute reads look for `key::` entries."""
        from askgraph.compiler import attribute_query
        from askgraph.query import read_query

        query = read_query(attribute_query("Status"))
        assert query.variables[0] == "?uid"

    @pytest.mark.parametrize("builder", ["children_query", "parents_query", "node_entries_query"])
    def test_hierarchy_queries_parse(self, builder):
        """Test hierarchy reads are valid queries filtered by ids."""
        from askgraph import compiler
        from askgraph.query import read_query

        text_ = getattr(compiler, builder)(["b", "a", "a"])
        assert '#{"a" "b"}' in text_
        read_query(text_)
