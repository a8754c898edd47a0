from __future__ import annotations

import random
from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class GameDefinition:
    id: str
    name: str
    description: str
    emoji: str
    min_players: int
    max_players: int
    has_rounds: bool
    instructions: tuple[str, ...]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["instructions"] = list(self.instructions)
        return data


GAME_DEFINITIONS: list[GameDefinition] = [
    GameDefinition(
        "questions", "質問タイム", "みんなで同じ質問に答えよう！", "💬", 2, 10, True,
        ("質問が表示されます", "全員が順番に答えます", "理由を一言添えると盛り上がります"),
    ),
    GameDefinition(
        "would_you_rather", "どっちがいい？", "AとBどっちを選ぶ？理由を一言", "🤔", 2, 10, True,
        ("2つの選択肢が表示されます", "全員がどちらかを選びます", "選んだ理由を話し合いましょう"),
    ),
    GameDefinition(
        "two_truths", "2つの真実と1つの嘘", "3つの発言のうち嘘を当てる", "🎭", 3, 8, True,
        ("発表者が3つの発言をします", "2つは本当、1つは嘘", "他の人は嘘を当てましょう"),
    ),
    GameDefinition(
        "word_wolf", "ワードウルフ", "少数派のお題を持つ人を探す", "🐺", 4, 8, False,
        ("全員にお題が配られます", "1人だけ違うお題（ウルフ）", "会話でウルフを探しましょう"),
    ),
    GameDefinition(
        "common_things", "10の共通点", "グループで共通点を10個探す", "🤝", 2, 10, False,
        ("ペアを作ります", "細かい共通点を10個探します", "意外な共通点ほど盛り上がります"),
    ),
    GameDefinition(
        "whodunit", "犯人探し", "誰の面白い経験か当てる", "🔍", 4, 10, True,
        ("全員が面白い経験を書きます", "シャッフルして読み上げます", "誰の話か当てましょう"),
    ),
    GameDefinition(
        "guess_favorite", "好きなもの当て", "誰の好みか当てる", "❤️", 3, 10, True,
        ("カテゴリーが発表されます", "全員が好きなものを書きます", "誰のか当てましょう"),
    ),
    GameDefinition(
        "peer_intro", "他己紹介", "ペアでインタビューして紹介", "🎤", 4, 10, False,
        ("ペアを作ります", "数分間インタビューします", "全体に向けて相手を紹介"),
    ),
    GameDefinition(
        "ng_word", "NGワードゲーム", "自分のNGワードを言わずに会話", "🚫", 3, 8, False,
        ("全員にNGワードが配られます", "自分のNGワードは見えません", "会話中に言ってしまったらアウト！"),
    ),
]

_BY_ID = {g.id: g for g in GAME_DEFINITIONS}


def get_game(game_type: str) -> GameDefinition:
    game = _BY_ID.get(game_type)
    if not game:
        raise ValueError(f"Unknown game type: {game_type}")
    return game


def is_known_game(game_type) -> bool:
    return isinstance(game_type, str) and game_type in _BY_ID


def is_valid_player_count(game_type: str, player_count: int) -> bool:
    game = get_game(game_type)
    return game.min_players <= player_count <= game.max_players


def shuffled(items: list, rng: random.Random | None = None) -> list:
    result = list(items)
    (rng or random).shuffle(result)
    return result


def pick(items: list, rng: random.Random | None = None):
    return (rng or random).choice(items)


def create_pairs(player_ids: list[str], rng: random.Random | None = None) -> list[list[str]]:
    """Pairs players up. With an odd count the leftover player forms a pair
    with each member of the last pair, so nobody sits out."""
    order = shuffled(player_ids, rng)
    pairs = [[order[i], order[i + 1]] for i in range(0, len(order) - 1, 2)]
    if len(order) % 2 == 1 and pairs:
        last = order[-1]
        a, b = pairs[-1]
        pairs[-1] = [a, last]
        pairs.append([b, last])
    return pairs


def select_wolf(player_ids: list[str], rng: random.Random | None = None) -> str:
    return pick(player_ids, rng)
