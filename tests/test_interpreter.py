"""Tests for the node interpreter.

Tests cover:
- Branch resolution for conditions and splits
- Exclusive branching vs. fan-out
- Action failure isolation and stop halting queued branches
- Cycle guard and replay safety (already-executed nodes run zero times)
- Goals, exits, unknown kinds, suspension collection
"""

from __future__ import annotations

import pytest

from flowengine.core.graph_schema import Edge
from flowengine.core.interpreter import (
    WalkOutcome,
    resolve_condition_edge,
    resolve_split_edge,
)
from flowengine.core.models import ActionStatus, TriggerContext, Variant


def _edges(*specs: tuple[str, str | None, str | None]) -> list[Edge]:
    return [
        Edge(id=f"e{i}", source="n", target=target, label=label, source_handle=handle)
        for i, (target, label, handle) in enumerate(specs)
    ]


class TestBranchResolution:
    """Edge selection for exclusive branches."""

    def test_condition_matches_labels_and_synonyms(self):
        edges = _edges(("no-path", "No", None), ("yes-path", "Yes", None))
        assert resolve_condition_edge(edges, True).target == "yes-path"
        assert resolve_condition_edge(edges, False).target == "no-path"

    def test_condition_matches_source_handle(self):
        edges = _edges(("f", "Low score", "false"), ("t", "High score", "true"))
        assert resolve_condition_edge(edges, True).target == "t"
        assert resolve_condition_edge(edges, False).target == "f"

    def test_condition_falls_back_to_unlabelled_then_first(self):
        edges = _edges(("labelled", "true", None), ("plain", None, None))
        assert resolve_condition_edge(edges, False).target == "plain"
        edges = _edges(("first", "maybe", None), ("second", "perhaps", None))
        assert resolve_condition_edge(edges, True).target == "first"
        assert resolve_condition_edge([], True) is None

    @pytest.mark.parametrize("label", ["B", "b", "Variant B", "path-b", "Variant B (30%)", "B: control"])
    def test_split_label_forms(self, label):
        edges = _edges(("a", "A", None), ("b", label, None))
        assert resolve_split_edge(edges, Variant.B).target == "b"

    def test_split_labels_with_percentages(self):
        edges = _edges(("a", "Variant A (70%)", None), ("b", "Variant B (30%)", None))
        assert resolve_split_edge(edges, Variant.A).target == "a"
        assert resolve_split_edge(edges, Variant.B).target == "b"

    def test_split_does_not_match_letter_inside_words(self):
        edges = _edges(("first", "Variant A", None), ("about", "Bonus", None))
        assert resolve_split_edge(edges, Variant.B).target == "first"


@pytest.fixture
def interpreter(engine):
    return engine.interpreter


@pytest.fixture
def run(interpreter, start_execution, lead):
    """Start an execution for ``workflow`` against lead-1 and walk it from the trigger."""

    async def _run(workflow, **lead_fields):
        lead(**lead_fields)
        context = start_execution(
            workflow, TriggerContext(lead_id="lead-1", email_address="ada@example.com")
        )
        result = await interpreter.execute_node(workflow.get_node("trigger"), workflow, context)
        return result, context

    return _run


class TestBranching:
    """Exclusive branches and fan-out."""

    @pytest.mark.parametrize("score,taken,skipped", [(80, "hot", "cold"), (10, "cold", "hot")])
    @pytest.mark.asyncio
    async def test_condition_visits_exactly_one_branch(
        self, graph, run, test_db, score, taken, skipped
    ):
        wf = (
            graph()
            .trigger()
            .condition("check", "LEAD_SCORE", scoreOperator="greater_than", scoreValue=50)
            .action("hot", "TAG_ADD", tagName="hot")
            .action("cold", "TAG_ADD", tagName="cold")
            .edge("trigger", "check")
            .edge("check", "hot", "true")
            .edge("check", "cold", "false")
            .build()
        )
        result, context = await run(wf, lead_score=score)

        assert result.outcome == WalkOutcome.COMPLETED
        assert taken in context.executed_node_ids
        assert skipped not in context.executed_node_ids
        [record] = test_db.get_condition_records(context.execution_id)
        assert record.result is (score > 50)
        assert record.path_taken == ("true" if score > 50 else "false")

    @pytest.mark.asyncio
    async def test_fan_out_visits_every_target_depth_first(self, graph, run):
        wf = (
            graph()
            .trigger()
            .action("a", "TAG_ADD", tagName="a")
            .action("a2", "TAG_ADD", tagName="a2")
            .action("b", "TAG_ADD", tagName="b")
            .node("g", "goal", goalType="purchase")
            .action("g1", "TAG_ADD", tagName="g1")
            .action("g2", "TAG_ADD", tagName="g2")
            .edge("trigger", "a")
            .edge("trigger", "b")
            .edge("trigger", "g")
            .edge("a", "a2")
            .edge("g", "g1")
            .edge("g", "g2")
            .build()
        )
        _, context = await run(wf)
        assert context.executed_node_ids == ["trigger", "a", "a2", "b", "g", "g1", "g2"]

    @pytest.mark.asyncio
    async def test_split_follows_one_variant(self, graph, run, test_db):
        wf = (
            graph()
            .trigger()
            .node("split", "split", splitPercentageA=100, splitPercentageB=0)
            .action("va", "TAG_ADD", tagName="a")
            .action("vb", "TAG_ADD", tagName="b")
            .edge("trigger", "split")
            .edge("split", "vb", "B")
            .edge("split", "va", "A")
            .build()
        )
        _, context = await run(wf)

        assert context.executed_node_ids == ["trigger", "split", "va"]
        assert test_db.get_split_test(wf.id, "split").variant_counts[Variant.A] == 1

    @pytest.mark.asyncio
    async def test_exit_ends_only_its_branch(self, graph, run):
        wf = (
            graph()
            .trigger()
            .node("bye", "exit", reason="done")
            .action("after-exit", "TAG_ADD", tagName="x")
            .action("sibling", "TAG_ADD", tagName="y")
            .edge("trigger", "bye")
            .edge("trigger", "sibling")
            .edge("bye", "after-exit")
            .build()
        )
        result, context = await run(wf)

        assert result.outcome == WalkOutcome.COMPLETED
        assert "after-exit" not in context.executed_node_ids
        assert "sibling" in context.executed_node_ids

    @pytest.mark.asyncio
    async def test_unknown_node_kind_passes_through(self, graph, run):
        wf = (
            graph()
            .trigger()
            .node("mystery", "hologram")
            .action("next", "TAG_ADD", tagName="x")
            .chain("trigger", "mystery", "next")
            .build()
        )
        _, context = await run(wf)
        assert context.executed_node_ids == ["trigger", "mystery", "next"]

    @pytest.mark.asyncio
    async def test_goal_registered_and_persisted(self, graph, run, test_db):
        wf = (
            graph()
            .trigger()
            .node("goal", "goal", goalType="purchase", skipToNodeId="thanks")
            .chain("trigger", "goal")
            .build()
        )
        _, context = await run(wf)

        assert [g.goal_type for g in context.goals] == ["purchase"]
        [goal] = test_db.get_goals(context.execution_id)
        assert goal.skip_to_node_id == "thanks"
        assert goal.achieved_at is None


class TestFailuresAndStops:
    """Action failure isolation and STOP_WORKFLOW."""

    @pytest.mark.asyncio
    async def test_failed_action_does_not_halt(self, graph, run, test_db):
        wf = (
            graph()
            .trigger()
            .action("a", "TAG_ADD", tagName="start")
            .action("b", "PIPELINE_MOVE", newStage="won")  # no opportunity id
            .action("c", "TAG_ADD", tagName="end")
            .chain("trigger", "a", "b", "c")
            .build()
        )
        result, context = await run(wf)

        assert result.outcome == WalkOutcome.COMPLETED
        assert "c" in context.executed_node_ids
        statuses = {r.node_id: r.status for r in test_db.get_action_records(context.execution_id)}
        assert statuses == {
            "a": ActionStatus.SUCCESS,
            "b": ActionStatus.FAILED,
            "c": ActionStatus.SUCCESS,
        }

    @pytest.mark.asyncio
    async def test_stop_halts_queued_siblings(self, graph, run, test_db):
        wf = (
            graph()
            .trigger()
            .action("b", "STOP_WORKFLOW")
            .action("c", "TAG_ADD", tagName="never")
            .edge("trigger", "b")
            .edge("trigger", "c")
            .build()
        )
        result, context = await run(wf)

        assert result.outcome == WalkOutcome.STOPPED
        assert "c" not in context.executed_node_ids
        assert [r.node_id for r in test_db.get_action_records(context.execution_id)] == ["b"]


class TestReplayGuard:
    """Nodes run at most once per execution."""

    @pytest.mark.asyncio
    async def test_back_edge_is_skipped(self, graph, run, test_db):
        wf = (
            graph()
            .trigger()
            .action("a", "TAG_ADD", tagName="a")
            .action("b", "TAG_ADD", tagName="b")
            .chain("trigger", "a", "b", "a")
            .build()
        )
        _, context = await run(wf)

        assert context.executed_node_ids == ["trigger", "a", "b"]
        assert len(test_db.get_action_records(context.execution_id)) == 2

    @pytest.mark.asyncio
    async def test_replay_of_executed_nodes_has_no_effects(
        self, graph, run, interpreter, test_db, crm, email_sender
    ):
        wf = (
            graph()
            .trigger()
            .action("tag", "TAG_ADD", tagName="hot")
            .action("mail", "EMAIL", subject="Hi")
            .chain("trigger", "tag", "mail")
            .build()
        )
        _, context = await run(wf)
        records_before = len(test_db.get_action_records(context.execution_id))

        replay = await interpreter.execute_node(wf.get_node("trigger"), wf, context)

        assert replay.visited == []
        assert len(test_db.get_action_records(context.execution_id)) == records_before
        assert len(email_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_progress_is_persisted_per_node(self, graph, run, test_db):
        wf = (
            graph()
            .trigger()
            .action("contact", "CONTACT_CREATE", firstName="Ada")
            .chain("trigger", "contact")
            .build()
        )
        _, context = await run(wf)

        execution = test_db.get_execution(context.execution_id)
        assert execution.executed_node_ids == ["trigger", "contact"]
        assert execution.contact_id == context.contact_id is not None


class TestSuspension:
    """Delay and wait nodes park their branch."""

    @pytest.mark.asyncio
    async def test_delay_parks_branch_but_siblings_continue(self, graph, run):
        wf = (
            graph()
            .trigger()
            .delay("wait", delayAmount=1, delayUnit="days")
            .action("later", "TAG_ADD", tagName="later")
            .action("now", "TAG_ADD", tagName="now")
            .edge("trigger", "wait")
            .edge("trigger", "now")
            .edge("wait", "later")
            .build()
        )
        result, context = await run(wf)

        assert result.outcome == WalkOutcome.SUSPENDED
        assert [s.node_id for s in result.suspensions] == ["wait"]
        assert "now" in context.executed_node_ids
        assert "later" not in context.executed_node_ids
