from __future__ import annotations

from itertools import combinations

import allure
import pytest

from agent_team.team.phase import (
    TaskSnapshot,
    TeamPhase,
    explain_phase,
    infer_phase,
    is_terminal_phase,
    phase_transition_log,
)

pytestmark = [
    allure.epic("Team Runtime"),
    allure.feature("Phase Controller"),
]

# One representative task per behavioural category, with the category it counts as.
CATEGORIES: dict[str, tuple[dict, str]] = {
    "pending": ({"status": "pending"}, "pending"),
    "in_progress": ({"status": "in_progress"}, "in_progress"),
    "completed": ({"status": "completed"}, "completed"),
    "failed_retryable": (
        {"status": "failed", "metadata": {"retryCount": 0, "maxRetries": 2}},
        "failed_retry",
    ),
    "failed_exhausted": (
        {"status": "failed", "metadata": {"retryCount": 2, "maxRetries": 2}},
        "failed_final",
    ),
    "failed_no_metadata": ({"status": "failed"}, "failed_final"),
    "permanent_failed": (
        {
            "status": "failed",
            "metadata": {"retryCount": 0, "maxRetries": 5, "permanentlyFailed": True},
        },
        "failed_final",
    ),
    "permanent_completed": (
        {"status": "completed", "metadata": {"permanentlyFailed": True}},
        "failed_final",
    ),
    "permanent_in_progress": (
        {"status": "in_progress", "metadata": {"permanentlyFailed": True}},
        "failed_final",
    ),
    "unknown_status": ({"status": "blocked"}, "other"),
}


def _expected_rule(kinds: set[str]) -> int:
    if not kinds:
        return 1
    if "in_progress" in kinds:
        return 2
    if kinds == {"pending"}:
        return 3
    if kinds == {"completed", "pending"}:
        return 4
    if "failed_retry" in kinds:
        return 6
    if kinds <= {"failed_final"}:
        return 7
    if kinds == {"completed"}:
        return 8
    return 9


@pytest.mark.parametrize(
    ("tasks", "expected"),
    [
        ([], TeamPhase.INITIALIZING),
        ([{"status": "pending"}], TeamPhase.PLANNING),
        ([{"status": "in_progress"}], TeamPhase.EXECUTING),
        (
            [{"status": "failed", "metadata": {"retryCount": 0, "maxRetries": 2}}],
            TeamPhase.FIXING,
        ),
        (
            [{"status": "failed", "metadata": {"retryCount": 2, "maxRetries": 2}}],
            TeamPhase.FAILED,
        ),
        ([{"status": "completed"}], TeamPhase.COMPLETED),
    ],
)
def test_reference_snapshots(tasks: list[dict], expected: TeamPhase) -> None:
    assert infer_phase(tasks) is expected


def test_in_progress_wins_over_failures() -> None:
    tasks = [
        {"status": "in_progress"},
        {"status": "failed", "metadata": {"retryCount": 2, "maxRetries": 2}},
    ]

    assert explain_phase(tasks).rule == 2


def test_permanently_failed_flag_overrides_status() -> None:
    tasks = [{"status": "completed", "metadata": {"permanentlyFailed": True}}]

    assert infer_phase(tasks) is TeamPhase.FAILED
    assert TaskSnapshot.from_mapping(tasks[0]).is_failed is True


def test_permanently_failed_task_is_never_retryable() -> None:
    snapshot = TaskSnapshot(status="failed", retry_count=0, max_retries=3, permanently_failed=True)

    assert snapshot.has_retries_left is False


def test_completed_with_permanent_failure_elsewhere_is_not_completed() -> None:
    tasks = [
        {"status": "completed"},
        {"status": "failed", "metadata": {"permanentlyFailed": True}},
    ]

    assert explain_phase(tasks).rule == 9


def test_every_category_combination_matches_exactly_one_rule() -> None:
    names = sorted(CATEGORIES)
    seen_rules: set[int] = set()
    for size in range(len(names) + 1):
        for combo in combinations(names, size):
            tasks = [CATEGORIES[name][0] for name in combo]
            kinds = {CATEGORIES[name][1] for name in combo}

            decision = explain_phase(tasks)

            assert decision.rule == _expected_rule(kinds), combo
            assert decision == explain_phase(list(reversed(tasks))), combo
            seen_rules.add(decision.rule)

    assert seen_rules == {1, 2, 3, 4, 6, 7, 8, 9}


def test_rule_four_and_fallback_never_overlap() -> None:
    names = sorted(CATEGORIES)
    for size in range(1, len(names) + 1):
        for combo in combinations(names, size):
            kinds = {CATEGORIES[name][1] for name in combo}
            rule = explain_phase([CATEGORIES[name][0] for name in combo]).rule
            if rule == 4:
                assert kinds == {"completed", "pending"}
            if rule == 9:
                assert kinds != {"completed", "pending"}
                assert "in_progress" not in kinds
                assert "failed_retry" not in kinds


def test_phase_is_deterministic_for_repeated_polls() -> None:
    tasks = [{"status": "completed"}, {"status": "pending"}]

    assert {infer_phase(tasks) for _ in range(10)} == {TeamPhase.EXECUTING}


@pytest.mark.parametrize(
    "junk",
    [
        [{}],
        [{"status": None}],
        [{"status": 7, "metadata": "nope"}],
        [{"status": "failed", "metadata": {"retryCount": "x", "maxRetries": True}}],
        [None],
        ["pending"],
    ],
)
def test_malformed_snapshots_map_to_a_phase(junk: list) -> None:
    assert infer_phase(junk) in set(TeamPhase)


def test_snapshot_objects_are_accepted_directly() -> None:
    assert infer_phase([TaskSnapshot(status="pending")]) is TeamPhase.PLANNING


def test_terminal_phases() -> None:
    assert is_terminal_phase(TeamPhase.COMPLETED) is True
    assert is_terminal_phase("failed") is True
    assert is_terminal_phase(TeamPhase.FIXING) is False
    assert is_terminal_phase("bogus") is False


def test_phase_transition_messages() -> None:
    assert phase_transition_log(None, TeamPhase.PLANNING) == "Team phase: planning"
    assert (
        phase_transition_log(TeamPhase.PLANNING, TeamPhase.EXECUTING)
        == "Team phase: planning -> executing"
    )
    assert "unchanged" in phase_transition_log(TeamPhase.FIXING, TeamPhase.FIXING)
