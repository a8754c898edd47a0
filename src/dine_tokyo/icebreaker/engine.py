"""Shared game state transitions for icebreaker sessions.

Every transition is a pure function of the current ``game_data``, the list of
players (``{"user_id", "player_data"}`` rows) and the action payload. The
caller persists the returned state, bumps ``current_round`` by
``round_delta``, adds ``awards`` to the match scoreboard and clears
``clear_player_keys`` from every player's data.
"""
from __future__ import annotations

import random
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from dine_tokyo.icebreaker import content
from dine_tokyo.icebreaker.games import create_pairs, pick, select_wolf, shuffled

INTERVIEW_SECONDS = 180
MAX_COMMON_ITEMS = 10
WOLF_ESCAPE_POINTS = 3

PLAYER_WRITABLE_KEYS = {
    "answer",
    "vote",
    "guesses",
    "myStatements",
    "myLieIndex",
    "lieGuess",
    "myStory",
    "myFavorite",
    "notes",
    "introduction",
    "sharedItems",
}


class GameActionError(ValueError):
    pass


@dataclass
class ActionResult:
    game_data: dict
    round_delta: int = 0
    awards: dict[str, int] = field(default_factory=dict)
    clear_player_keys: list[str] = field(default_factory=list)


@dataclass
class _Context:
    game_data: dict
    players: list[dict]
    payload: dict
    actor_id: str
    rng: random.Random | None
    now: datetime

    @property
    def player_ids(self) -> list[str]:
        return [str(p["user_id"]) for p in self.players]

    def data_of(self, user_id: str) -> dict:
        for p in self.players:
            if str(p["user_id"]) == user_id:
                return p.get("player_data") or {}
        return {}


def sanitize_player_data(existing: dict | None, updates: dict) -> dict:
    """Merges whitelisted keys into a player's data; ``None`` deletes a key."""
    unknown = [k for k in updates if k not in PLAYER_WRITABLE_KEYS]
    if unknown:
        raise GameActionError(f"Unsupported player data keys: {', '.join(sorted(unknown))}")
    merged = dict(existing or {})
    for key, value in updates.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise GameActionError(message)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


# questions

def _next_question(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    history = list(data.get("questionHistory") or [])
    current = data.get("currentQuestion")
    if current:
        history.append(current)
    pool = content.all_questions(ctx.payload.get("category"))
    _require(bool(pool), "Unknown question category")
    fresh = [q for q in pool if q not in history and q != current] or pool
    data["currentQuestion"] = pick(fresh, ctx.rng)
    data["questionHistory"] = history
    return ActionResult(data, round_delta=1, clear_player_keys=["answer"])


# would_you_rather

def _next_choice(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    current = (data.get("optionA"), data.get("optionB"))
    pool = [c for c in content.WOULD_YOU_RATHER if c != current] or content.WOULD_YOU_RATHER
    option_a, option_b = pick(pool, ctx.rng)
    data["optionA"] = option_a
    data["optionB"] = option_b
    return ActionResult(data, round_delta=1, clear_player_keys=["answer"])


# two_truths

def _select_presenter(ctx: _Context) -> ActionResult:
    presenter_id = str(ctx.payload.get("player_id") or ctx.actor_id)
    _require(presenter_id in ctx.player_ids, "Presenter is not in this session")
    submitted = ctx.data_of(presenter_id)
    statements = submitted.get("myStatements")
    lie_index = submitted.get("myLieIndex")
    _require(
        isinstance(statements, list) and len(statements) == 3 and all(isinstance(s, str) and s.strip() for s in statements),
        "Presenter has not submitted three statements",
    )
    _require(isinstance(lie_index, int) and 0 <= lie_index < 3, "Presenter has not chosen the lie")
    data = {
        "currentPlayerId": presenter_id,
        "statements": list(statements),
        "lieIndex": lie_index,
        "revealed": False,
    }
    return ActionResult(data, round_delta=1, clear_player_keys=["lieGuess"])


def _reveal_lie(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(bool(data.get("currentPlayerId")), "No presenter selected")
    _require(not data.get("revealed"), "Already revealed")
    data["revealed"] = True
    awards = {}
    for user_id in ctx.player_ids:
        if user_id == data["currentPlayerId"]:
            continue
        if ctx.data_of(user_id).get("lieGuess") == data.get("lieIndex"):
            awards[user_id] = 1
    return ActionResult(data, awards=awards)


def _two_truths_next_round(ctx: _Context) -> ActionResult:
    return ActionResult({}, clear_player_keys=["myStatements", "myLieIndex", "lieGuess"])


# word_wolf

def _start_word_wolf(ctx: _Context) -> ActionResult:
    majority, minority = pick(content.WORD_WOLF_TOPICS, ctx.rng)
    minutes = 3 + int(len(ctx.players) * 0.5)
    data = {
        "majorityWord": majority,
        "minorityWord": minority,
        "wolfId": select_wolf(ctx.player_ids, ctx.rng),
        "discussionEndTime": _iso(ctx.now + timedelta(minutes=minutes)),
        "votingPhase": False,
        "resultRevealed": False,
        "pointsAwarded": False,
    }
    return ActionResult(data, round_delta=1, clear_player_keys=["vote"])


def _start_voting(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(bool(data.get("wolfId")), "Game has not started")
    _require(not data.get("votingPhase"), "Voting already started")
    data["votingPhase"] = True
    return ActionResult(data)


def _reveal_wolf(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(bool(data.get("votingPhase")), "Voting has not started")
    _require(not data.get("resultRevealed"), "Result already revealed")
    votes = {uid: ctx.data_of(uid).get("vote") for uid in ctx.player_ids}
    tally = Counter(v for v in votes.values() if v)
    ranked = tally.most_common()
    top_count = ranked[0][1] if ranked else 0
    most_voted = [uid for uid, n in ranked if n == top_count] if ranked else []
    wolf_id = data["wolfId"]
    caught = most_voted == [wolf_id]

    awards: dict[str, int] = {}
    if not data.get("pointsAwarded"):
        if caught:
            awards = {uid: 1 for uid, vote in votes.items() if vote == wolf_id and uid != wolf_id}
        else:
            awards = {wolf_id: WOLF_ESCAPE_POINTS}

    data.update(
        {
            "resultRevealed": True,
            "pointsAwarded": True,
            "voteCounts": dict(tally),
            "mostVotedIds": most_voted,
            "wolfCaught": caught,
        }
    )
    return ActionResult(data, awards=awards)


def _reset(ctx: _Context) -> ActionResult:
    return ActionResult({}, clear_player_keys=["vote"])


# common_things

def _start_pairs(ctx: _Context) -> ActionResult:
    _require(len(ctx.players) >= 2, "Need at least two players")
    data = {
        "pairs": create_pairs(ctx.player_ids, ctx.rng),
        "currentPairIndex": 0,
        "foundItems": [],
        "prompts": shuffled(content.COMMON_THINGS_PROMPTS, ctx.rng)[:5],
    }
    return ActionResult(data, clear_player_keys=["sharedItems"])


def _add_item(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require("pairs" in data, "Game has not started")
    item = ctx.payload.get("item")
    _require(isinstance(item, str) and bool(item.strip()), "Missing item")
    found = list(data.get("foundItems") or [])
    _require(len(found) < MAX_COMMON_ITEMS, f"Already found {MAX_COMMON_ITEMS} items")
    found.append(item.strip())
    data["foundItems"] = found
    data["completed"] = len(found) >= MAX_COMMON_ITEMS
    return ActionResult(data)


def _next_common_pair(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    pairs = data.get("pairs") or []
    _require(bool(pairs), "Game has not started")
    index = int(data.get("currentPairIndex") or 0)
    _require(index + 1 < len(pairs), "No more pairs")
    data["currentPairIndex"] = index + 1
    data["foundItems"] = []
    data["completed"] = False
    return ActionResult(data)


# whodunit

def _start_story_guessing(ctx: _Context) -> ActionResult:
    stories = [
        {"text": ctx.data_of(uid)["myStory"].strip(), "authorId": uid}
        for uid in ctx.player_ids
        if isinstance(ctx.data_of(uid).get("myStory"), str) and ctx.data_of(uid)["myStory"].strip()
    ]
    _require(len(stories) >= 2, "Need at least two stories")
    data = {"stories": shuffled(stories, ctx.rng), "currentStoryIndex": 0, "revealed": False}
    return ActionResult(data, round_delta=1)


def _step_story(step: int) -> Callable[[_Context], ActionResult]:
    def handler(ctx: _Context) -> ActionResult:
        data = dict(ctx.game_data)
        stories = data.get("stories") or []
        _require(bool(stories), "Guessing has not started")
        index = int(data.get("currentStoryIndex") or 0) + step
        _require(0 <= index < len(stories), "No story in that direction")
        data["currentStoryIndex"] = index
        data["revealed"] = False
        return ActionResult(data)

    return handler


def _reveal_story(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(bool(data.get("stories")), "Guessing has not started")
    data["revealed"] = True
    return ActionResult(data)


def _whodunit_next_round(ctx: _Context) -> ActionResult:
    return ActionResult({}, clear_player_keys=["myStory"])


# guess_favorite

def _new_category(ctx: _Context) -> ActionResult:
    current = ctx.game_data.get("category")
    pool = [c for c in content.FAVORITE_CATEGORIES if c != current] or content.FAVORITE_CATEGORIES
    data = {"category": pick(pool, ctx.rng), "guessingPhase": False, "revealed": False, "pointsAwarded": False}
    return ActionResult(data, round_delta=1, clear_player_keys=["myFavorite", "guesses"])


def _start_favorite_guessing(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(bool(data.get("category")), "No category selected")
    _require(not data.get("guessingPhase"), "Guessing already started")
    submitted = [uid for uid in ctx.player_ids if ctx.data_of(uid).get("myFavorite")]
    _require(len(submitted) >= 2, "Need at least two answers")
    order = shuffled(submitted, ctx.rng)
    data["shuffledPlayerIds"] = order
    data["answers"] = [{"userId": uid, "answer": ctx.data_of(uid)["myFavorite"]} for uid in order]
    data["guessingPhase"] = True
    data["revealed"] = False
    return ActionResult(data)


def _reveal_favorites(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(bool(data.get("guessingPhase")), "Guessing has not started")
    order = data.get("shuffledPlayerIds") or []
    awards: dict[str, int] = {}
    if not data.get("pointsAwarded"):
        for uid in ctx.player_ids:
            guesses = ctx.data_of(uid).get("guesses") or {}
            correct = sum(
                1
                for index, guessed in guesses.items()
                if str(index).isdigit() and int(index) < len(order)
                and order[int(index)] != uid and order[int(index)] == guessed
            )
            if correct:
                awards[uid] = correct
    data["revealed"] = True
    data["pointsAwarded"] = True
    return ActionResult(data, awards=awards)


# peer_intro

def _start_peer_intro(ctx: _Context) -> ActionResult:
    data = {
        "peerIntroPhase": "pairing",
        "interviewPairs": create_pairs(ctx.player_ids, ctx.rng),
        "currentPairIndex2": 0,
    }
    return ActionResult(data, clear_player_keys=["notes", "introduction"])


def _start_interview(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(data.get("peerIntroPhase") == "pairing", "Pairs are not ready")
    data["peerIntroPhase"] = "interview"
    data["interviewEndTime"] = _iso(ctx.now + timedelta(seconds=INTERVIEW_SECONDS))
    return ActionResult(data)


def _start_presentation(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(data.get("peerIntroPhase") == "interview", "Interview has not started")
    data["peerIntroPhase"] = "presentation"
    data["currentPairIndex2"] = 0
    return ActionResult(data)


def _next_intro_pair(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(data.get("peerIntroPhase") == "presentation", "Presentation has not started")
    index = int(data.get("currentPairIndex2") or 0)
    _require(index + 1 < len(data.get("interviewPairs") or []), "No more pairs")
    data["currentPairIndex2"] = index + 1
    return ActionResult(data)


# ng_word

def _start_ng_word(ctx: _Context) -> ActionResult:
    words = shuffled(content.NG_WORDS, ctx.rng)
    assignments = [
        {"userId": uid, "ngWord": words[i] if i < len(words) else f"NGワード{i + 1}"}
        for i, uid in enumerate(ctx.player_ids)
    ]
    data = {
        "ngWordAssignments": assignments,
        "eliminatedPlayers": [],
        "discussionTopic": pick(content.NG_WORD_TOPICS, ctx.rng),
        "resultRevealed": False,
    }
    return ActionResult(data, round_delta=1)


def _eliminate(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(bool(data.get("ngWordAssignments")), "Game has not started")
    _require(not data.get("resultRevealed"), "Game is over")
    target = str(ctx.payload.get("player_id") or "")
    _require(target in ctx.player_ids, "Player is not in this session")
    eliminated = list(data.get("eliminatedPlayers") or [])
    _require(target not in eliminated, "Player is already out")
    eliminated.append(target)
    data["eliminatedPlayers"] = eliminated
    remaining = [uid for uid in ctx.player_ids if uid not in eliminated]
    if len(remaining) <= 1:
        data["resultRevealed"] = True
        data["winnerIds"] = remaining
    return ActionResult(data)


def _show_ng_result(ctx: _Context) -> ActionResult:
    data = dict(ctx.game_data)
    _require(bool(data.get("ngWordAssignments")), "Game has not started")
    eliminated = data.get("eliminatedPlayers") or []
    data["resultRevealed"] = True
    data["winnerIds"] = [uid for uid in ctx.player_ids if uid not in eliminated]
    return ActionResult(data)


ACTIONS: dict[str, dict[str, Callable[[_Context], ActionResult]]] = {
    "questions": {"next_question": _next_question},
    "would_you_rather": {"next_choice": _next_choice},
    "two_truths": {
        "select_presenter": _select_presenter,
        "reveal": _reveal_lie,
        "next_round": _two_truths_next_round,
    },
    "word_wolf": {
        "start": _start_word_wolf,
        "start_voting": _start_voting,
        "reveal": _reveal_wolf,
        "reset": _reset,
    },
    "common_things": {
        "start": _start_pairs,
        "add_item": _add_item,
        "next_pair": _next_common_pair,
    },
    "whodunit": {
        "start_guessing": _start_story_guessing,
        "next_story": _step_story(1),
        "prev_story": _step_story(-1),
        "reveal": _reveal_story,
        "next_round": _whodunit_next_round,
    },
    "guess_favorite": {
        "new_category": _new_category,
        "start_guessing": _start_favorite_guessing,
        "reveal": _reveal_favorites,
    },
    "peer_intro": {
        "start": _start_peer_intro,
        "start_interview": _start_interview,
        "start_presentation": _start_presentation,
        "next_pair": _next_intro_pair,
    },
    "ng_word": {
        "start": _start_ng_word,
        "eliminate": _eliminate,
        "reveal": _show_ng_result,
        "reset": _reset,
    },
}


def apply_action(game_type: str, game_data: dict | None, players: list[dict], action: str,
                 payload: dict | None, actor_id: str, rng: random.Random | None = None,
                 now: datetime | None = None) -> ActionResult:
    handlers = ACTIONS.get(game_type)
    if handlers is None:
        raise GameActionError(f"Unknown game type: {game_type}")
    handler = handlers.get(action)
    if handler is None:
        raise GameActionError(f"Unknown action '{action}' for {game_type}")
    ctx = _Context(
        game_data=dict(game_data or {}),
        players=players,
        payload=dict(payload or {}),
        actor_id=str(actor_id),
        rng=rng,
        now=now or datetime.now(timezone.utc),
    )
    return handler(ctx)


def player_view(game_type: str, game_data: dict | None, viewer_id: str) -> dict:
    """Strips what the viewer must not see yet."""
    data = dict(game_data or {})
    viewer_id = str(viewer_id)

    if game_type == "word_wolf" and data.get("wolfId") and not data.get("resultRevealed"):
        is_wolf = data["wolfId"] == viewer_id
        data["myWord"] = data["minorityWord"] if is_wolf else data["majorityWord"]
        for key in ("wolfId", "majorityWord", "minorityWord"):
            data.pop(key, None)

    if game_type == "two_truths" and not data.get("revealed"):
        if data.get("currentPlayerId") != viewer_id:
            data.pop("lieIndex", None)

    if game_type == "whodunit" and not data.get("revealed"):
        data["stories"] = [{"text": s["text"]} for s in data.get("stories") or []]

    if game_type == "guess_favorite" and not data.get("revealed"):
        data["answers"] = [{"answer": a["answer"]} for a in data.get("answers") or []]
        data.pop("shuffledPlayerIds", None)

    if game_type == "ng_word" and not data.get("resultRevealed"):
        data["ngWordAssignments"] = [
            a if a["userId"] != viewer_id else {"userId": viewer_id, "ngWord": None}
            for a in data.get("ngWordAssignments") or []
        ]

    return data
