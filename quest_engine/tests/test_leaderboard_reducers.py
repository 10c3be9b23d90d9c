from datetime import datetime, timedelta, timezone

from quest_engine.features.leaderboard.reducers import first_name, project_leaderboard, reduce_leaderboard
from quest_engine.models.challenge import ChallengeInstance

MONDAY = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
NOW = datetime(2024, 1, 20, 12, 0, tzinfo=timezone.utc)


def _instance(user_id, points, start=MONDAY, group_id=None, status="active", day=1):
    return ChallengeInstance(
        id=f"inst-{user_id}",
        user_id=user_id,
        challenge_start_date=start,
        last_active_date=start,
        status=status,
        group_id=group_id,
        total_points=points,
        current_day=day,
    )


def test_group_scope_overrides_weekly_view():
    viewer = _instance("alice", 30, group_id="g1")
    instances = [
        viewer,
        _instance("bob", 50, start=MONDAY + timedelta(days=21), group_id="g1"),
        _instance("carol", 90),  # same week, other group
    ]

    board = reduce_leaderboard(viewer, instances, "weekly", now=NOW)

    assert board.scope == "group"
    assert [e.user_id for e in board.entries] == ["bob", "alice"]
    assert board.user_rank == 2


def test_weekly_cohorts_are_disjoint():
    week_one = [_instance("alice", 10), _instance("bob", 20, start=MONDAY + timedelta(days=6, hours=14))]
    week_two = [_instance("carol", 30, start=MONDAY + timedelta(days=7)), _instance("dan", 5, start=MONDAY + timedelta(days=9))]
    everyone = week_one + week_two

    first = reduce_leaderboard(week_one[0], everyone, "weekly", now=NOW)
    second = reduce_leaderboard(week_two[1], everyone, "weekly", now=NOW)

    assert {e.user_id for e in first.entries} == {"alice", "bob"}
    assert {e.user_id for e in second.entries} == {"carol", "dan"}
    assert first.scope == second.scope == "weekly"


def test_alltime_is_union_of_active_instances():
    instances = [
        _instance("alice", 10),
        _instance("bob", 20, start=MONDAY + timedelta(days=30)),
        _instance("carol", 99, status="completed"),
    ]

    board = reduce_leaderboard(instances[0], instances, "alltime", now=NOW)

    assert board.scope == "alltime"
    assert [e.user_id for e in board.entries] == ["bob", "alice"]
    assert board.entries[1].is_current_user
    assert board.computed_at == NOW


def test_ties_keep_input_order_with_sequential_ranks():
    instances = [_instance("alice", 10), _instance("bob", 10), _instance("carol", 20)]

    board = reduce_leaderboard(instances[1], instances, "weekly", now=NOW)

    assert [(e.rank, e.user_id) for e in board.entries] == [(1, "carol"), (2, "alice"), (3, "bob")]
    assert board.user_rank == 3


def test_names_are_first_token_or_anonymous(profiles):
    instances = [_instance("alice", 30), _instance("bob", 20), _instance("carol", 10), _instance("dan", 5)]

    board = reduce_leaderboard(instances[0], instances, "weekly", profiles.display_name, NOW)

    assert [e.name for e in board.entries] == ["Alice", "Bob", "Anonymous", "Anonymous"]


def test_viewer_outside_scope_has_no_rank():
    viewer = _instance("alice", 10, status="completed")

    board = reduce_leaderboard(viewer, [viewer, _instance("bob", 5)], "weekly", now=NOW)

    assert board.user_rank is None
    assert [e.user_id for e in board.entries] == ["bob"]


def test_first_name():
    assert first_name("Ada Lovelace") == "Ada"
    assert first_name("  Grace  Hopper ") == "Grace"
    assert first_name("") == "Anonymous"
    assert first_name(None) == "Anonymous"


def test_project_leaderboard_queries_the_store(store, profiles):
    store.create_instance(_instance("alice", 40))
    store.create_instance(_instance("bob", 60, start=MONDAY + timedelta(days=2)))
    store.create_instance(_instance("carol", 80, start=MONDAY + timedelta(days=8)))
    viewer = store.get_active_instance("alice")

    weekly = project_leaderboard(store, viewer, "weekly", profiles, NOW)
    alltime = project_leaderboard(store, viewer, "alltime", profiles, NOW)

    assert [e.name for e in weekly.entries] == ["Bob", "Alice"]
    assert [e.user_id for e in alltime.entries] == ["carol", "bob", "alice"]
    assert alltime.user_rank == 3
