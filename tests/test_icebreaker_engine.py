from __future__ import annotations

import random
from datetime import datetime, timezone

import pytest

from dine_tokyo.icebreaker import content, engine
from dine_tokyo.icebreaker.engine import GameActionError

NOW = datetime(2026, 11, 7, 10, 0, tzinfo=timezone.utc)


def _players(*ids, **data):
    return [{"user_id": uid, "player_data": dict(data.get(uid, {}))} for uid in ids]


def _apply(game_type, game_data, players, action, payload=None, actor="p1", seed=7):
    return engine.apply_action(game_type, game_data, players, action, payload, actor,
                               rng=random.Random(seed), now=NOW)


def test_unknown_game_and_action_raise():
    with pytest.raises(GameActionError):
        _apply("chess", {}, _players("p1"), "start")
    with pytest.raises(GameActionError):
        _apply("questions", {}, _players("p1"), "explode")


def test_next_question_appends_history_and_clears_answers():
    first = _apply("questions", {}, _players("p1", "p2"), "next_question", {"category": "casual"})
    assert first.game_data["currentQuestion"] in content.QUESTIONS["casual"]
    assert first.game_data["questionHistory"] == []
    assert first.round_delta == 1
    assert first.clear_player_keys == ["answer"]

    second = _apply("questions", first.game_data, _players("p1", "p2"), "next_question", {"category": "casual"})
    assert second.game_data["questionHistory"] == [first.game_data["currentQuestion"]]
    assert second.game_data["currentQuestion"] != first.game_data["currentQuestion"]


def test_next_question_rejects_unknown_category():
    with pytest.raises(GameActionError):
        _apply("questions", {}, _players("p1"), "next_question", {"category": "spicy"})


def test_would_you_rather_changes_choice():
    result = _apply("would_you_rather", {}, _players("p1", "p2"), "next_choice")
    assert (result.game_data["optionA"], result.game_data["optionB"]) in content.WOULD_YOU_RATHER
    assert result.round_delta == 1


def test_two_truths_flow_awards_correct_guessers():
    players = _players(
        "p1", "p2", "p3",
        p1={"myStatements": ["a", "b", "c"], "myLieIndex": 2},
        p2={"lieGuess": 2},
        p3={"lieGuess": 0},
    )
    selected = _apply("two_truths", {}, players, "select_presenter", {"player_id": "p1"})
    assert selected.game_data["statements"] == ["a", "b", "c"]
    assert selected.game_data["revealed"] is False

    revealed = _apply("two_truths", selected.game_data, players, "reveal")
    assert revealed.game_data["revealed"] is True
    assert revealed.awards == {"p2": 1}

    with pytest.raises(GameActionError):
        _apply("two_truths", revealed.game_data, players, "reveal")


def test_two_truths_presenter_must_submit():
    with pytest.raises(GameActionError):
        _apply("two_truths", {}, _players("p1", "p2", "p3"), "select_presenter", {"player_id": "p2"})


def test_word_wolf_start_sets_discussion_timer():
    players = _players("p1", "p2", "p3", "p4")
    result = _apply("word_wolf", {}, players, "start")

    data = result.game_data
    assert data["wolfId"] in {"p1", "p2", "p3", "p4"}
    assert (data["majorityWord"], data["minorityWord"]) in content.WORD_WOLF_TOPICS
    # 3 + floor(4 * 0.5) minutes
    assert data["discussionEndTime"] == "2026-11-07T10:05:00+00:00"
    assert result.round_delta == 1


def _wolf_state(wolf="p4"):
    return {"majorityWord": "犬", "minorityWord": "猫", "wolfId": wolf, "votingPhase": True,
            "resultRevealed": False, "pointsAwarded": False}


def test_word_wolf_caught_awards_voters():
    players = _players("p1", "p2", "p3", "p4",
                       p1={"vote": "p4"}, p2={"vote": "p4"}, p3={"vote": "p1"}, p4={"vote": "p1"})
    players[3]["player_data"]["vote"] = "p2"
    result = _apply("word_wolf", _wolf_state(), players, "reveal")

    assert result.game_data["wolfCaught"] is True
    assert result.game_data["mostVotedIds"] == ["p4"]
    assert result.awards == {"p1": 1, "p2": 1}


def test_word_wolf_escape_awards_wolf_and_reveals_once():
    players = _players("p1", "p2", "p3", "p4",
                       p1={"vote": "p2"}, p2={"vote": "p3"}, p3={"vote": "p2"}, p4={"vote": "p2"})
    result = _apply("word_wolf", _wolf_state(), players, "reveal")
    assert result.game_data["wolfCaught"] is False
    assert result.awards == {"p4": engine.WOLF_ESCAPE_POINTS}

    with pytest.raises(GameActionError):
        _apply("word_wolf", result.game_data, players, "reveal")


def test_word_wolf_tied_vote_lets_wolf_escape():
    players = _players("p1", "p2", "p3", "p4",
                       p1={"vote": "p4"}, p2={"vote": "p4"}, p3={"vote": "p1"}, p4={"vote": "p1"})
    result = _apply("word_wolf", _wolf_state(), players, "reveal")

    assert sorted(result.game_data["mostVotedIds"]) == ["p1", "p4"]
    assert result.game_data["wolfCaught"] is False
    assert result.awards == {"p4": engine.WOLF_ESCAPE_POINTS}


def test_word_wolf_reveal_requires_voting():
    state = {**_wolf_state(), "votingPhase": False}
    with pytest.raises(GameActionError):
        _apply("word_wolf", state, _players("p1", "p2", "p3", "p4"), "reveal")


def test_common_things_collects_up_to_ten_items():
    players = _players("p1", "p2", "p3")
    started = _apply("common_things", {}, players, "start")
    assert len(started.game_data["pairs"]) == 2

    data = started.game_data
    for i in range(engine.MAX_COMMON_ITEMS):
        data = _apply("common_things", data, players, "add_item", {"item": f"item {i}"}).game_data
    assert data["completed"] is True
    with pytest.raises(GameActionError):
        _apply("common_things", data, players, "add_item", {"item": "one more"})

    moved = _apply("common_things", data, players, "next_pair").game_data
    assert moved["currentPairIndex"] == 1
    assert moved["foundItems"] == []
    with pytest.raises(GameActionError):
        _apply("common_things", moved, players, "next_pair")


def test_whodunit_requires_two_stories_and_bounds_navigation():
    with pytest.raises(GameActionError):
        _apply("whodunit", {}, _players("p1", "p2", p1={"myStory": "x"}), "start_guessing")

    players = _players("p1", "p2", "p3", p1={"myStory": "one"}, p2={"myStory": "two"}, p3={"myStory": " "})
    started = _apply("whodunit", {}, players, "start_guessing")
    assert sorted(s["authorId"] for s in started.game_data["stories"]) == ["p1", "p2"]

    with pytest.raises(GameActionError):
        _apply("whodunit", started.game_data, players, "prev_story")
    forward = _apply("whodunit", started.game_data, players, "next_story").game_data
    assert forward["currentStoryIndex"] == 1
    with pytest.raises(GameActionError):
        _apply("whodunit", forward, players, "next_story")


def test_guess_favorite_awards_correct_guesses_once():
    players = _players("p1", "p2", "p3", p1={"myFavorite": "sushi"}, p2={"myFavorite": "ramen"})
    category = _apply("guess_favorite", {}, players, "new_category").game_data
    assert category["category"] in content.FAVORITE_CATEGORIES

    guessing = _apply("guess_favorite", category, players, "start_guessing").game_data
    order = guessing["shuffledPlayerIds"]
    assert sorted(order) == ["p1", "p2"]

    players[2]["player_data"]["guesses"] = {"0": order[0], "1": order[0]}
    revealed = _apply("guess_favorite", guessing, players, "reveal")
    assert revealed.awards == {"p3": 1}
    assert revealed.game_data["pointsAwarded"] is True

    again = _apply("guess_favorite", revealed.game_data, players, "reveal")
    assert again.awards == {}


def test_guess_favorite_ignores_guess_on_own_favorite():
    players = _players("p1", "p2", "p3", p1={"myFavorite": "sushi"}, p2={"myFavorite": "ramen"})
    guessing = _apply("guess_favorite", {"category": "food"}, players, "start_guessing").game_data
    order = guessing["shuffledPlayerIds"]
    own = order.index("p1")
    other = 1 - own

    players[0]["player_data"]["guesses"] = {str(own): "p1", str(other): order[other]}
    revealed = _apply("guess_favorite", guessing, players, "reveal")

    assert revealed.awards == {"p1": 1}


def test_peer_intro_phases():
    players = _players("p1", "p2", "p3", "p4")
    data = _apply("peer_intro", {}, players, "start").game_data
    assert data["peerIntroPhase"] == "pairing"
    with pytest.raises(GameActionError):
        _apply("peer_intro", data, players, "start_presentation")

    data = _apply("peer_intro", data, players, "start_interview").game_data
    assert data["interviewEndTime"] == "2026-11-07T10:03:00+00:00"
    data = _apply("peer_intro", data, players, "start_presentation").game_data
    data = _apply("peer_intro", data, players, "next_pair").game_data
    assert data["currentPairIndex2"] == 1
    with pytest.raises(GameActionError):
        _apply("peer_intro", data, players, "next_pair")


def test_ng_word_elimination_ends_with_last_player():
    players = _players("p1", "p2", "p3")
    data = _apply("ng_word", {}, players, "start").game_data
    words = [a["ngWord"] for a in data["ngWordAssignments"]]
    assert len(set(words)) == 3
    assert data["discussionTopic"] in content.NG_WORD_TOPICS

    data = _apply("ng_word", data, players, "eliminate", {"player_id": "p1"}).game_data
    assert data["resultRevealed"] is False
    with pytest.raises(GameActionError):
        _apply("ng_word", data, players, "eliminate", {"player_id": "p1"})

    data = _apply("ng_word", data, players, "eliminate", {"player_id": "p2"}).game_data
    assert data["resultRevealed"] is True
    assert data["winnerIds"] == ["p3"]


def test_player_view_hides_secrets():
    wolf = engine.player_view("word_wolf", _wolf_state("p4"), "p4")
    villager = engine.player_view("word_wolf", _wolf_state("p4"), "p1")
    assert wolf["myWord"] == "猫"
    assert villager["myWord"] == "犬"
    assert "wolfId" not in villager

    truths = {"currentPlayerId": "p1", "statements": ["a", "b", "c"], "lieIndex": 1, "revealed": False}
    assert "lieIndex" not in engine.player_view("two_truths", truths, "p2")
    assert engine.player_view("two_truths", truths, "p1")["lieIndex"] == 1

    stories = {"stories": [{"text": "x", "authorId": "p1"}], "revealed": False}
    assert engine.player_view("whodunit", stories, "p2")["stories"] == [{"text": "x"}]

    ng = {"ngWordAssignments": [{"userId": "p1", "ngWord": "りんご"}, {"userId": "p2", "ngWord": "電車"}]}
    view = engine.player_view("ng_word", ng, "p1")
    assert view["ngWordAssignments"] == [{"userId": "p1", "ngWord": None}, {"userId": "p2", "ngWord": "電車"}]


def test_sanitize_player_data():
    merged = engine.sanitize_player_data({"answer": "A", "vote": "p2"}, {"answer": "B", "vote": None})
    assert merged == {"answer": "B"}
    with pytest.raises(GameActionError):
        engine.sanitize_player_data({}, {"score": 100})
