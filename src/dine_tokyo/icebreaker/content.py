from __future__ import annotations

QUESTIONS: dict[str, list[str]] = {
    "casual": [
        "最近ハマっていることは？",
        "休日の過ごし方は？",
        "好きな食べ物は？",
        "最近見た映画やドラマは？",
        "行きたい国はどこ？",
        "朝型？夜型？",
        "インドア派？アウトドア派？",
        "好きな音楽のジャンルは？",
        "最近買って良かったものは？",
        "ペット飼ってる？飼いたい？",
        "好きな季節は？",
        "コーヒー派？紅茶派？",
        "最近読んだ本は？",
        "好きなスポーツは？",
        "よく使うアプリは？",
    ],
    "fun": [
        "もし宝くじ1億円当たったら何する？",
        "超能力が使えるなら何がいい？",
        "タイムマシンで行くなら過去？未来？",
        "生まれ変わったら何になりたい？",
        "無人島に一つだけ持っていくなら？",
        "一日だけ有名人になれるなら誰？",
        "実は隠れた特技がある？",
        "子供の頃の夢は？",
        "今までで一番笑ったことは？",
        "あだ名はある？",
        "絶対に食べられないものは？",
        "自分を動物に例えると？",
        "一番くだらない買い物は？",
        "明日世界が終わるなら何する？",
        "意外とハマっている趣味は？",
    ],
    "deep": [
        "人生で大切にしていることは？",
        "今の仕事を選んだ理由は？",
        "10年後どうなっていたい？",
        "尊敬する人は？",
        "人生で一番の挑戦は？",
        "自分の長所は？",
        "最近感動したことは？",
        "今一番頑張っていることは？",
        "人生のターニングポイントは？",
        "座右の銘は？",
        "最近学んだことは？",
        "幸せを感じる瞬間は？",
        "苦手を克服した経験は？",
        "自分が変わったきっかけは？",
        "将来の夢は？",
    ],
}

WOULD_YOU_RATHER: list[tuple[str, str]] = [
    ("時間を止められる", "空を飛べる"),
    ("過去に戻れる", "未来が見える"),
    ("海派", "山派"),
    ("一生夏", "一生冬"),
    ("お金持ちだけど忙しい", "普通だけど自由"),
    ("透明人間になれる", "瞬間移動できる"),
    ("動物と話せる", "全言語を話せる"),
    ("記憶力抜群", "運動神経抜群"),
    ("大勢の前でスピーチ", "一人でバンジージャンプ"),
    ("毎日同じ服", "毎日同じ食事"),
    ("田舎で静かに暮らす", "都会で刺激的に暮らす"),
    ("一生スマホなし", "一生お菓子なし"),
    ("料理上手になる", "掃除上手になる"),
    ("一人旅", "グループ旅行"),
    ("映画館で映画", "家で映画"),
    ("肉派", "魚派"),
    ("サプライズする", "サプライズされる"),
    ("計画的に行動", "直感で行動"),
    ("挑戦して失敗", "挑戦せず後悔"),
    ("昔の友達と再会", "新しい友達を作る"),
    ("好きなことを仕事に", "仕事と趣味は別"),
    ("和食", "洋食"),
    ("辛いもの好き", "甘いもの好き"),
    ("聞き上手", "話し上手"),
    ("一目惚れ", "ゆっくり好きになる"),
]

# (majority word, minority word)
WORD_WOLF_TOPICS: list[tuple[str, str]] = [
    ("ラーメン", "うどん"),
    ("寿司", "刺身"),
    ("カレー", "シチュー"),
    ("ハンバーグ", "ハンバーガー"),
    ("ピザ", "パスタ"),
    ("コーヒー", "紅茶"),
    ("ケーキ", "プリン"),
    ("焼肉", "しゃぶしゃぶ"),
    ("東京", "大阪"),
    ("海", "プール"),
    ("山", "丘"),
    ("映画館", "劇場"),
    ("カフェ", "喫茶店"),
    ("コンビニ", "スーパー"),
    ("遊園地", "動物園"),
    ("犬", "猫"),
    ("パンダ", "クマ"),
    ("ライオン", "トラ"),
    ("うさぎ", "ハムスター"),
    ("イルカ", "クジラ"),
    ("クリスマス", "正月"),
    ("花火大会", "お祭り"),
    ("バレンタイン", "ホワイトデー"),
    ("春", "秋"),
    ("夏休み", "冬休み"),
    ("YouTube", "TikTok"),
    ("Netflix", "Amazon Prime"),
    ("LINE", "Instagram"),
    ("カラオケ", "ボウリング"),
    ("ゲーム", "漫画"),
    ("野球", "サッカー"),
    ("テニス", "バドミントン"),
    ("ジョギング", "ウォーキング"),
    ("スキー", "スノーボード"),
    ("筋トレ", "ヨガ"),
]

COMMON_THINGS_PROMPTS: list[str] = [
    "好きな食べ物",
    "苦手な食べ物",
    "好きな飲み物",
    "よく作る料理",
    "休日の過ごし方",
    "ハマっていること",
    "好きな音楽ジャンル",
    "行ったことある国",
    "行ってみたい国",
    "旅行の思い出",
    "朝のルーティン",
    "ストレス発散法",
    "よく使うアプリ",
    "大切にしている価値観",
    "得意なこと",
    "学生時代の部活",
    "習い事の経験",
    "出身地域",
]

NG_WORDS: list[str] = [
    "りんご",
    "バナナ",
    "電車",
    "携帯",
    "コーヒー",
    "パソコン",
    "音楽",
    "映画",
    "ラーメン",
    "カレー",
    "仕事",
    "週末",
    "旅行",
    "お酒",
    "写真",
    "天気",
]

NG_WORD_TOPICS: list[str] = [
    "最近ハマっていること",
    "週末の過ごし方",
    "好きな食べ物・料理",
    "行ってみたい場所",
    "子供の頃の思い出",
    "最近見た映画やドラマ",
    "趣味について",
    "仕事で大変だったこと",
    "理想のデートプラン",
    "最近買ってよかったもの",
]

FAVORITE_CATEGORIES: list[str] = [
    "好きな色",
    "好きな食べ物",
    "行きたい国",
    "好きな動物",
    "好きな映画のジャンル",
    "好きな季節",
    "理想の休日の過ごし方",
    "好きな音楽",
]


def all_questions(category: str | None = None) -> list[str]:
    if category:
        return list(QUESTIONS.get(category, []))
    return [q for items in QUESTIONS.values() for q in items]
