from __future__ import annotations

PERSONALITY_TYPES = ["Leader", "Supporter", "Analyst", "Entertainer"]

QUESTIONS: list[dict] = [
    {"question": "休日はどう過ごすことが多いですか？", "options": [("外出して人と会う", "E"), ("家でゆっくり過ごす", "I")]},
    {"question": "グループでの会話では？", "options": [("積極的に話を振る", "L"), ("聞き役になることが多い", "S")]},
    {"question": "新しいことを始めるとき、どちらが大切？", "options": [("計画をしっかり立てる", "A"), ("直感を信じて動く", "N")]},
    {"question": "困っている人がいたら？", "options": [("具体的な解決策を提案", "T"), ("まず話を聞いて共感する", "F")]},
    {"question": "チームでの役割は？", "options": [("方向性を決めてリードする", "D"), ("みんなをサポートする", "C")]},
    {"question": "会話で重視するのは？", "options": [("楽しさや盛り上がり", "FUN"), ("深い理解や学び", "DEEP")]},
    {"question": "初対面の人との場では？", "options": [("自分から話しかける", "ACTIVE"), ("相手から話しかけられるのを待つ", "PASSIVE")]},
    {"question": "意見が分かれたとき、どうする？", "options": [("自分の意見をしっかり主張", "ASSERT"), ("全員が納得できる落とし所を探す", "HARMONY")]},
    {"question": "ストレス解消法は？", "options": [("友人と話したり遊んだりする", "SOCIAL"), ("一人で趣味に没頭する", "SOLO")]},
    {"question": "グループの雰囲気が悪いとき、どうする？", "options": [("明るい話題で空気を変える", "LIGHTEN"), ("問題点を分析して解決を図る", "SOLVE")]},
]

ANSWER_WEIGHTS: dict[str, dict[str, int]] = {
    "E": {"Entertainer": 1, "Leader": 1},
    "I": {"Analyst": 1, "Supporter": 1},
    "L": {"Leader": 2},
    "S": {"Supporter": 2},
    "A": {"Analyst": 2},
    "N": {"Entertainer": 2},
    "T": {"Analyst": 1, "Leader": 1},
    "F": {"Supporter": 1, "Entertainer": 1},
    "D": {"Leader": 1},
    "C": {"Supporter": 1},
    "FUN": {"Entertainer": 2},
    "DEEP": {"Analyst": 2},
    "ACTIVE": {"Leader": 1, "Entertainer": 1},
    "PASSIVE": {"Supporter": 1, "Analyst": 1},
    "ASSERT": {"Leader": 2},
    "HARMONY": {"Supporter": 2},
    "SOCIAL": {"Entertainer": 1, "Leader": 1},
    "SOLO": {"Analyst": 1, "Supporter": 1},
    "LIGHTEN": {"Entertainer": 2},
    "SOLVE": {"Analyst": 1, "Leader": 1},
}


def is_valid_type(value) -> bool:
    return isinstance(value, str) and value in PERSONALITY_TYPES


def score_answers(answers: list[str]) -> dict[str, int]:
    unknown = [a for a in answers if a not in ANSWER_WEIGHTS]
    if unknown:
        raise ValueError(f"Unknown answer codes: {', '.join(map(str, unknown))}")
    scores = {t: 0 for t in PERSONALITY_TYPES}
    for answer in answers:
        for personality, weight in ANSWER_WEIGHTS[answer].items():
            scores[personality] += weight
    return scores


def calculate_type(answers: list[str]) -> str:
    scores = score_answers(answers)
    # max() keeps the first of equal scores, i.e. PERSONALITY_TYPES order
    return max(PERSONALITY_TYPES, key=lambda t: scores[t])
