"""Table assignment for dinner events.

Hard rules, applied to both manual edits and automatic assignment:

* members of one invite group (same ``group_id``) always sit at the same table;
* two users related by a block review never share a table, whichever of them
  wrote the review. Guests are exempt from blocks.

Soft preferences (gender balance, mood, budget, personality mix, identity
verification) only feed the table scores and the automatic placement.

Member ids are user ids, or ``guest:<guest id>`` for admin-added guests.
"""
from __future__ import annotations

import math
import uuid
from collections import Counter
from dataclasses import dataclass, field

GUEST_PREFIX = "guest:"

MIN_TABLE_SIZE = 3
MAX_TABLE_SIZE = 8
TARGET_TABLE_SIZE = 5
MAX_GROUP_SIZE = 3

BLOCK_CONFLICT_MESSAGE = "⚠️ ブロック関係のあるユーザーがいます"
MISSING_RESTAURANT_MESSAGE = "お店を入力してください"


def is_guest_id(member_id: str) -> bool:
    return str(member_id).startswith(GUEST_PREFIX)


def to_guest_id(guest_id: str) -> str:
    return f"{GUEST_PREFIX}{guest_id}"


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class Member:
    id: str
    display_name: str
    gender: str | None
    group_id: str
    is_guest: bool = False
    mood: str | None = None
    budget_level: int | None = None
    personality_type: str | None = None
    is_identity_verified: bool = False
    line_user_id: str | None = None

    @property
    def group_key(self) -> str:
        # guest and user groups never merge
        return f"{GUEST_PREFIX}{self.group_id}" if self.is_guest else self.group_id


@dataclass
class Table:
    id: str
    restaurant_name: str = ""
    restaurant_url: str = ""
    reservation_name: str = ""
    members: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict) -> "Table":
        return cls(
            id=str(raw.get("table_id") or raw.get("id") or uuid.uuid4().hex),
            restaurant_name=str(raw.get("restaurant_name") or ""),
            restaurant_url=str(raw.get("restaurant_url") or ""),
            reservation_name=str(raw.get("reservation_name") or ""),
            members=[str(m) for m in (raw.get("members") or raw.get("table_members") or [])],
        )

    def to_dict(self) -> dict:
        return {
            "table_id": self.id,
            "restaurant_name": self.restaurant_name,
            "restaurant_url": self.restaurant_url,
            "reservation_name": self.reservation_name,
            "members": list(self.members),
        }


@dataclass
class TableScore:
    total: int
    gender_balance: int
    mood_match: int
    budget_match: int
    personality: int
    verification_match: int
    has_block_conflict: bool

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "genderBalance": self.gender_balance,
            "moodMatch": self.mood_match,
            "budgetMatch": self.budget_match,
            "personality": self.personality,
            "verificationMatch": self.verification_match,
            "hasBlockConflict": self.has_block_conflict,
        }


@dataclass
class ValidationResult:
    errors: list[str]
    table_errors: dict[str, str]
    valid: bool

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": self.errors, "tableErrors": self.table_errors}


class BlockRelations:
    """Symmetric set of user pairs that must not share a table."""

    def __init__(self, pairs: list[tuple[str, str]] | None = None):
        self._pairs: set[tuple[str, str]] = set()
        for reviewer_id, target_id in pairs or []:
            self._pairs.add((str(reviewer_id), str(target_id)))
            self._pairs.add((str(target_id), str(reviewer_id)))

    def blocked(self, a: str, b: str) -> bool:
        return (a, b) in self._pairs

    def has_conflict(self, member_ids: list[str]) -> bool:
        user_ids = [m for m in member_ids if not is_guest_id(m)]
        for i, a in enumerate(user_ids):
            for b in user_ids[i + 1:]:
                if self.blocked(a, b):
                    return True
        return False


def build_roster(participations: list[dict], guests: list[dict]) -> dict[str, Member]:
    """Roster keyed by member id, users first in entry order, then guests."""
    roster: dict[str, Member] = {}
    for p in participations:
        if p.get("status") == "canceled":
            continue
        member_id = str(p["user_id"])
        roster[member_id] = Member(
            id=member_id,
            display_name=p.get("display_name") or "",
            gender=p.get("gender"),
            group_id=str(p.get("group_id") or member_id),
            mood=p.get("mood"),
            budget_level=p.get("budget_level"),
            personality_type=p.get("personality_type"),
            is_identity_verified=bool(p.get("is_identity_verified")),
            line_user_id=p.get("line_user_id"),
        )
    for g in guests:
        member_id = to_guest_id(str(g["id"]))
        roster[member_id] = Member(
            id=member_id,
            display_name=g.get("display_name") or "",
            gender=g.get("gender"),
            group_id=str(g.get("group_id") or g["id"]),
            is_guest=True,
        )
    return roster


def groups_of(roster: dict[str, Member]) -> dict[str, list[Member]]:
    groups: dict[str, list[Member]] = {}
    for member in roster.values():
        groups.setdefault(member.group_key, []).append(member)
    return groups


def group_member_ids(roster: dict[str, Member], member_id: str) -> list[str]:
    member = roster.get(member_id)
    if not member:
        return []
    return [m.id for m in roster.values() if m.group_key == member.group_key]


def move_group(tables: list[Table], roster: dict[str, Member], member_id: str, table_id: str) -> list[Table]:
    """Moves the member's whole group to the target table, removing it everywhere else."""
    ids = group_member_ids(roster, member_id)
    if not ids or not any(t.id == table_id for t in tables):
        return tables
    for table in tables:
        table.members = [m for m in table.members if m not in ids]
    for table in tables:
        if table.id == table_id:
            table.members.extend(ids)
    return tables


def remove_group(tables: list[Table], roster: dict[str, Member], table_id: str, member_id: str) -> list[Table]:
    ids = group_member_ids(roster, member_id)
    for table in tables:
        if table.id == table_id:
            table.members = [m for m in table.members if m not in ids]
    return tables


def unassigned_member_ids(tables: list[Table], roster: dict[str, Member]) -> list[str]:
    seated = {m for t in tables for m in t.members}
    return [member_id for member_id in roster if member_id not in seated]


def split_group_errors(tables: list[Table], roster: dict[str, Member]) -> list[str]:
    errors = []
    for members in groups_of(roster).values():
        if len(members) <= 1:
            continue
        seated_at = set()
        for member in members:
            for table in tables:
                if member.id in table.members:
                    seated_at.add(table.id)
                    break
        if len(seated_at) > 1:
            names = "と".join(m.display_name for m in members)
            errors.append(f"{names}はグループなので同じテーブルに割り当ててください")
    return errors


def table_problem(table: Table, blocks: BlockRelations) -> str | None:
    if blocks.has_conflict(table.members):
        return BLOCK_CONFLICT_MESSAGE
    if not table.restaurant_name.strip():
        return MISSING_RESTAURANT_MESSAGE
    size = len(table.members)
    if size < MIN_TABLE_SIZE:
        return f"{MIN_TABLE_SIZE - size}人以上追加してください"
    if size > MAX_TABLE_SIZE:
        return f"最大{MAX_TABLE_SIZE}人までです（現在{size}人）"
    return None


def validate(tables: list[Table], roster: dict[str, Member], blocks: BlockRelations) -> ValidationResult:
    errors: list[str] = []
    seen: set[str] = set()
    for table in tables:
        for member_id in table.members:
            if member_id not in roster:
                errors.append(f"不明なメンバーです: {member_id}")
            elif member_id in seen:
                errors.append(f"{roster[member_id].display_name}が複数のテーブルに割り当てられています")
            seen.add(member_id)

    errors.extend(split_group_errors(tables, roster))

    table_errors: dict[str, str] = {}
    for index, table in enumerate(tables, start=1):
        problem = table_problem(table, blocks)
        if problem:
            table_errors[table.id] = problem
            errors.append(f"テーブル{index}: {problem}")

    if not tables:
        errors.append("テーブルがありません")
    return ValidationResult(errors=errors, table_errors=table_errors, valid=not errors)


def gender_balance_score(male: int, female: int) -> int:
    if male + female == 0:
        return 100
    if max(male, female) == 0:
        return 100
    return _round(min(male, female) / max(male, female) * 100)


def mood_match_score(moods: list[str]) -> int:
    if not moods:
        return 100
    top = Counter(moods).most_common(1)[0][1]
    return _round(top / len(moods) * 100)


def budget_match_score(levels: list[int]) -> int:
    if not levels:
        return 100
    spread = max(levels) - min(levels)
    if spread >= 2:
        return 20
    if spread == 1:
        return 70
    return 100


def personality_score(types: list[str]) -> int:
    if len(types) <= 1:
        return 100
    present = set(types)
    diversity = len(present) / 4 * 50
    bonus = 0
    if {"Leader", "Supporter"} <= present:
        bonus += 25
    if {"Analyst", "Entertainer"} <= present:
        bonus += 25
    return min(100, _round(diversity + bonus))


def verification_match_score(verified: int, total: int) -> int:
    if total == 0 or verified == 0 or verified == total:
        return 100
    return _round(verified / total * 100)


def score_table(member_ids: list[str], roster: dict[str, Member], blocks: BlockRelations) -> TableScore:
    members = [roster[m] for m in member_ids if m in roster]
    users = [m for m in members if not m.is_guest]
    male = sum(1 for m in members if m.gender == "male")
    female = sum(1 for m in members if m.gender == "female")

    gender = gender_balance_score(male, female)
    mood = mood_match_score([m.mood for m in users if m.mood])
    budget = budget_match_score([m.budget_level for m in users if m.budget_level is not None])
    personality = personality_score([m.personality_type for m in users if m.personality_type])
    verification = verification_match_score(sum(1 for m in users if m.is_identity_verified), len(users))
    conflict = blocks.has_conflict(member_ids)
    total = 0 if conflict else _round((gender + mood + budget + personality + verification) / 5)
    return TableScore(
        total=total,
        gender_balance=gender,
        mood_match=mood,
        budget_match=budget,
        personality=personality,
        verification_match=verification,
        has_block_conflict=conflict,
    )


@dataclass
class _Seat:
    """Running totals for one table during automatic assignment."""

    male: int = 0
    female: int = 0
    total: int = 0
    moods: list[str] = field(default_factory=list)
    budgets: list[int] = field(default_factory=list)
    personalities: list[str] = field(default_factory=list)
    verified: int = 0
    group_keys: set[str] = field(default_factory=set)


def table_count_for(total_people: int) -> int:
    count = max(1, _round(total_people / TARGET_TABLE_SIZE))
    while count * MAX_TABLE_SIZE < total_people:
        count += 1
    while count > 1 and total_people / count < MIN_TABLE_SIZE:
        count -= 1
    return count


def _group_blocks(groups: dict[str, list[Member]], blocks: BlockRelations) -> dict[str, set[str]]:
    keys = list(groups)
    blocked: dict[str, set[str]] = {k: set() for k in keys}
    for i, a in enumerate(keys):
        a_users = [m.id for m in groups[a] if not m.is_guest]
        for b in keys[i + 1:]:
            b_users = [m.id for m in groups[b] if not m.is_guest]
            if any(blocks.blocked(x, y) for x in a_users for y in b_users):
                blocked[a].add(b)
                blocked[b].add(a)
    return blocked


def _placement_score(seat: _Seat, group: list[Member]) -> int:
    users = [m for m in group if not m.is_guest]
    size = seat.total + len(group)
    verified = seat.verified + sum(1 for m in users if m.is_identity_verified)
    return (
        gender_balance_score(
            seat.male + sum(1 for m in group if m.gender == "male"),
            seat.female + sum(1 for m in group if m.gender == "female"),
        )
        + mood_match_score(seat.moods + [m.mood for m in users if m.mood])
        + budget_match_score(seat.budgets + [m.budget_level for m in users if m.budget_level is not None])
        + personality_score(seat.personalities + [m.personality_type for m in users if m.personality_type])
        + verification_match_score(verified, size)
        + (MAX_TABLE_SIZE - seat.total) * 5
    )


def auto_assign(roster: dict[str, Member], blocks: BlockRelations) -> list[Table]:
    """Greedy placement of whole groups, larger groups first.

    Each group goes to the best-scoring table that stays within the size cap
    and holds no blocked group. When every table is blocked it falls back to
    the least occupied table that fits, then to a fresh overflow table.
    """
    groups = groups_of(roster)
    if not groups:
        return []
    blocked = _group_blocks(groups, blocks)
    total_people = sum(len(g) for g in groups.values())

    tables = [Table(id=f"auto-{i + 1}") for i in range(table_count_for(total_people))]
    seats = [_Seat() for _ in tables]

    ordered = sorted(groups.items(), key=lambda item: len(item[1]), reverse=True)
    for key, group in ordered:
        best_index = -1
        best_score = None
        for i, seat in enumerate(seats):
            if seat.total + len(group) > MAX_TABLE_SIZE:
                continue
            if seat.group_keys & blocked[key]:
                continue
            score = _placement_score(seat, group)
            if best_score is None or score > best_score:
                best_score = score
                best_index = i

        if best_index == -1:
            fitting = [i for i, s in enumerate(seats) if s.total + len(group) <= MAX_TABLE_SIZE]
            if fitting:
                best_index = min(fitting, key=lambda i: seats[i].total)
            else:
                best_index = len(tables)
                tables.append(Table(id=f"auto-{best_index + 1}"))
                seats.append(_Seat())

        seat = seats[best_index]
        users = [m for m in group if not m.is_guest]
        tables[best_index].members.extend(m.id for m in group)
        seat.male += sum(1 for m in group if m.gender == "male")
        seat.female += sum(1 for m in group if m.gender == "female")
        seat.total += len(group)
        seat.moods.extend(m.mood for m in users if m.mood)
        seat.budgets.extend(m.budget_level for m in users if m.budget_level is not None)
        seat.personalities.extend(m.personality_type for m in users if m.personality_type)
        seat.verified += sum(1 for m in users if m.is_identity_verified)
        seat.group_keys.add(key)

    return [t for t in tables if t.members]
