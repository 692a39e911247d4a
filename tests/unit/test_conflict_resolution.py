"""Unit tests for roster_reconcile.conflict_resolution."""

from __future__ import annotations

import pytest

from roster_reconcile.conflict_resolution import (
    STATUS_PENDING,
    STATUS_RESOLVED,
    TIE_BREAK_PREFER_B,
    ImportSession,
    Resolution,
    apply_resolutions,
    fill_blanks,
    parse_resolution,
    pick_merge_winner,
)
from roster_reconcile.conflicts import detect_conflicts
from roster_reconcile.dedup_score import ACTION_CREATE, ACTION_SKIP, ACTION_UPDATE, SOURCE_CONFLICT
from roster_reconcile.records import ExistingEntity, IncomingRecord
from roster_reconcile.session_store import InMemoryKeyValueStore
from roster_reconcile.shared import ConflictUnresolved


def _pair_records() -> list[IncomingRecord]:
    return [
        IncomingRecord(0, name="Alice Adams", rank=1, identifier="25012345", rating=1500, club="Kings"),
        IncomingRecord(1, name="Alice A", rank=2, identifier="25012345", city="Pune"),
        IncomingRecord(2, name="Bob Brown", rank=3),
    ]


def _session(records, existing=None, store=None, file_hash="h1") -> ImportSession:
    session = ImportSession("c-1", file_hash, store)
    session.register(detect_conflicts(records, existing))
    return session


# ---------------------------------------------------------------------------
# parse_resolution
# ---------------------------------------------------------------------------

class TestParseResolution:
    @pytest.mark.parametrize("raw, expected", [
        ("keepA", Resolution.KEEP_A),
        ("keep-b", Resolution.KEEP_B),
        ("KEEP_BOTH", Resolution.KEEP_BOTH),
        ("keepBoth", Resolution.KEEP_BOTH),
        (" Merge ", Resolution.MERGE),
        (Resolution.KEEP_A, Resolution.KEEP_A),
    ])
    def test_spellings(self, raw, expected):
        assert parse_resolution(raw) is expected

    @pytest.mark.parametrize("raw", ["", None, "keep", "drop_a"])
    def test_unknown(self, raw):
        with pytest.raises(ValueError, match="unknown resolution"):
            parse_resolution(raw)


# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------

class TestMergeWinner:
    def test_richer_side_wins(self):
        a, b, _ = _pair_records()
        assert pick_merge_winner(a, b) == "a"
        assert pick_merge_winner(b, a) == "b"

    def test_higher_rating_breaks_richness_tie(self):
        a = IncomingRecord(0, name="X Y", rank=1, rating=1400)
        b = IncomingRecord(1, name="X Y", rank=2, rating=1600)
        assert pick_merge_winner(a, b) == "b"

    def test_tie_break(self):
        a = IncomingRecord(0, name="X Y", rank=1)
        b = IncomingRecord(1, name="X Y", rank=2)
        assert pick_merge_winner(a, b) == "a"
        assert pick_merge_winner(a, b, TIE_BREAK_PREFER_B) == "b"

    def test_fill_blanks_never_overwrites(self):
        a, b, _ = _pair_records()
        filled = fill_blanks(a, b)
        assert filled == ["city"]
        assert a.city == "Pune"
        assert a.name == "Alice Adams"

    def test_fill_blanks_carries_dob_original(self):
        winner = IncomingRecord(0, name="X Y", rank=1)
        loser = IncomingRecord(1, name="X Y", rank=2, dob="2009-01-01", dob_original="2009", dob_inferred=True)
        fill_blanks(winner, loser)
        assert winner.dob == "2009-01-01"
        assert winner.dob_original == "2009"
        assert winner.dob_inferred is True


# ---------------------------------------------------------------------------
# ImportSession
# ---------------------------------------------------------------------------

class TestImportSession:
    def test_pairs_start_pending(self):
        session = _session(_pair_records())
        (pid,) = [p.pair_id for p in session.pairs]
        assert session.status(pid) == STATUS_PENDING
        assert session.pending == [pid]
        with pytest.raises(ConflictUnresolved) as exc_info:
            session.ensure_resolved()
        assert exc_info.value.pending == [pid]

    def test_resolve_accepts_strings(self):
        session = _session(_pair_records())
        pid = session.pairs[0].pair_id
        session.resolve(pid, "keepB")
        assert session.resolution(pid) is Resolution.KEEP_B
        assert session.status(pid) == STATUS_RESOLVED
        session.ensure_resolved()

    def test_resolve_unknown_pair(self):
        with pytest.raises(KeyError):
            _session(_pair_records()).resolve("identifier:0:row:8:row:9", Resolution.MERGE)

    def test_resolve_all_keeps_existing_choices(self):
        records = _pair_records() + [
            IncomingRecord(3, name="Cara Cole", rank=4, sequence_no=7),
            IncomingRecord(4, name="Dev Mehta", rank=5, sequence_no=7),
        ]
        session = _session(records)
        first, second = [p.pair_id for p in session.pairs]
        session.resolve(first, Resolution.MERGE)
        assert session.resolve_all(Resolution.KEEP_BOTH) == 1
        assert session.resolution(first) is Resolution.MERGE
        assert session.resolution(second) is Resolution.KEEP_BOTH

    def test_reopen(self):
        session = _session(_pair_records())
        pid = session.pairs[0].pair_id
        session.resolve(pid, Resolution.KEEP_A)
        session.reopen(pid)
        assert session.pending == [pid]
        assert session.resolution(pid) is None

    def test_resolutions_restored_for_same_file(self):
        store = InMemoryKeyValueStore()
        first = _session(_pair_records(), store=store)
        pid = first.pairs[0].pair_id
        first.resolve(pid, Resolution.MERGE)

        reopened = _session(_pair_records(), store=store)
        assert reopened.status(pid) == STATUS_RESOLVED
        assert reopened.resolution(pid) is Resolution.MERGE

    def test_other_file_hash_starts_fresh(self):
        store = InMemoryKeyValueStore()
        first = _session(_pair_records(), store=store)
        first.resolve_all(Resolution.KEEP_A)
        other = _session(_pair_records(), store=store, file_hash="h2")
        assert other.pending == [p.pair_id for p in other.pairs]

    def test_clear_forgets_persisted_state(self):
        store = InMemoryKeyValueStore()
        session = _session(_pair_records(), store=store)
        session.resolve_all(Resolution.KEEP_A)
        session.clear()
        assert store.get(session.key) is None
        assert len(session.pending) == 1

    def test_to_dict(self):
        session = _session(_pair_records())
        pid = session.pairs[0].pair_id
        session.resolve(pid, Resolution.KEEP_BOTH)
        assert session.to_dict() == {pid: {"status": STATUS_RESOLVED, "resolution": "keep_both"}}


# ---------------------------------------------------------------------------
# apply_resolutions: incoming vs incoming
# ---------------------------------------------------------------------------

class TestApplyIntraBatch:
    def _apply(self, resolution: Resolution):
        records = _pair_records()
        session = _session(records)
        session.resolve_all(resolution)
        return apply_resolutions(records, session)

    def test_pending_raises(self):
        records = _pair_records()
        with pytest.raises(ConflictUnresolved):
            apply_resolutions(records, _session(records))

    def test_keep_a(self):
        outcome = self._apply(Resolution.KEEP_A)
        assert [r.original_index for r in outcome.records] == [0, 2]
        assert outcome.dropped[0]["row"] == 1

    def test_keep_b(self):
        outcome = self._apply(Resolution.KEEP_B)
        assert [r.original_index for r in outcome.records] == [1, 2]

    def test_keep_both(self):
        outcome = self._apply(Resolution.KEEP_BOTH)
        assert [r.original_index for r in outcome.records] == [0, 1, 2]
        assert outcome.dropped == []

    def test_merge_richer_wins_and_absorbs_blanks(self):
        outcome = self._apply(Resolution.MERGE)
        assert [r.original_index for r in outcome.records] == [0, 2]
        survivor = outcome.records[0]
        assert survivor.city == "Pune"
        assert survivor.rating == 1500
        assert outcome.merges[0]["winner"] == "row:0"
        assert outcome.merges[0]["loser"] == "row:1"
        assert outcome.merges[0]["filled"] == ["city"]

    def test_merge_after_drop_is_skipped(self):
        records = [
            IncomingRecord(0, name="Alice Adams", rank=1, identifier="25012345"),
            IncomingRecord(1, name="Alicia Adams", rank=2, identifier="25012345"),
            IncomingRecord(2, name="Alyssa Adams", rank=3, identifier="25012345"),
        ]
        session = _session(records)
        first, second = [p.pair_id for p in session.pairs]
        session.resolve(first, Resolution.KEEP_B)
        session.resolve(second, Resolution.MERGE)
        outcome = apply_resolutions(records, session)
        assert [r.original_index for r in outcome.records] == [1, 2]
        assert any("merge skipped" in w for w in outcome.warnings)


# ---------------------------------------------------------------------------
# apply_resolutions: existing vs incoming
# ---------------------------------------------------------------------------

class TestApplyCrossStore:
    def _existing(self, **kw) -> ExistingEntity:
        base = {"id": "e-1", "name": "Alice Adams", "rank": 4, "identifier": "25012345"}
        base.update(kw)
        return ExistingEntity(**base)

    def _incoming(self, **kw) -> IncomingRecord:
        base = {"name": "Alice B Adams", "rank": 1, "identifier": "25012345", "rating": 1600, "club": "Kings"}
        base.update(kw)
        return IncomingRecord(0, **base)

    def _decide(self, resolution, existing, incoming):
        session = _session([incoming], [existing])
        session.resolve_all(resolution)
        outcome = apply_resolutions([incoming], session)
        assert [r.original_index for r in outcome.records] == [0]
        decision = outcome.predecided[0]
        assert decision.source == SOURCE_CONFLICT
        return outcome, decision

    def test_keep_a_skips(self):
        _, decision = self._decide(Resolution.KEEP_A, self._existing(), self._incoming())
        assert decision.action == ACTION_SKIP
        assert decision.existing_id == "e-1"

    def test_keep_b_updates_changed_fields(self):
        _, decision = self._decide(Resolution.KEEP_B, self._existing(), self._incoming())
        assert decision.action == ACTION_UPDATE
        assert decision.payload == {"name": "Alice B Adams", "rating": 1600, "club": "Kings"}
        assert "rank" not in decision.payload

    def test_keep_both_creates(self):
        _, decision = self._decide(Resolution.KEEP_BOTH, self._existing(), self._incoming())
        assert decision.action == ACTION_CREATE
        assert decision.existing_id is None

    def test_merge_incoming_richer(self):
        outcome, decision = self._decide(Resolution.MERGE, self._existing(), self._incoming())
        assert decision.action == ACTION_UPDATE
        assert decision.payload["rating"] == 1600
        assert outcome.merges[0]["winner"] == "row:0"

    def test_merge_existing_richer_fills_only_blanks(self):
        existing = self._existing(rating=1700, club="Queens", city="Pune", dob="2009-01-01")
        incoming = IncomingRecord(0, name="Alice B Adams", rank=1, identifier="25012345",
                                  state="MH", club="Kings")
        outcome, decision = self._decide(Resolution.MERGE, existing, incoming)
        assert decision.payload == {"state": "MH"}
        assert outcome.merges[0]["winner"] == "existing"

    def test_keep_b_without_changes_is_skip(self):
        existing = self._existing(name="Alice B Adams", rating=1600, club="Kings", sequence_no=3)
        incoming = self._incoming(sequence_no=5)
        _, decision = self._decide(Resolution.KEEP_B, existing, incoming)
        assert decision.action == ACTION_SKIP
        assert decision.payload == {}


# ---------------------------------------------------------------------------
# keep_both on a shared sequence number
# ---------------------------------------------------------------------------

class TestKeepBothSequence:
    def test_cross_store_clears_incoming_sequence(self):
        existing = ExistingEntity(id="e-7", name="Zed Zero", rank=1, sequence_no=7)
        incoming = IncomingRecord(0, name="Alice Adams", rank=2, sequence_no=7)
        session = _session([incoming], [existing])
        assert [p.key_kind for p in session.pairs] == ["sequence"]
        session.resolve_all(Resolution.KEEP_BOTH)
        outcome = apply_resolutions([incoming], session)
        assert outcome.predecided[0].action == ACTION_CREATE
        assert outcome.records[0].sequence_no is None
        assert any("sequence_no 7 cleared" in w for w in outcome.warnings)

    def test_intra_batch_clears_second_row(self):
        records = [
            IncomingRecord(0, name="Alice Adams", rank=1, sequence_no=4),
            IncomingRecord(1, name="Bob Brown", rank=2, sequence_no=4),
        ]
        session = _session(records)
        session.resolve_all(Resolution.KEEP_BOTH)
        outcome = apply_resolutions(records, session)
        assert [r.sequence_no for r in outcome.records] == [4, None]

    def test_other_resolutions_keep_sequence(self):
        existing = ExistingEntity(id="e-7", name="Zed Zero", rank=1, sequence_no=7)
        incoming = IncomingRecord(0, name="Alice Adams", rank=2, sequence_no=7)
        session = _session([incoming], [existing])
        session.resolve_all(Resolution.KEEP_A)
        outcome = apply_resolutions([incoming], session)
        assert outcome.records[0].sequence_no == 7
        assert outcome.warnings == []

    def test_identifier_pair_with_distinct_sequences_untouched(self):
        records = _pair_records()
        records[0].sequence_no, records[1].sequence_no = 1, 2
        session = _session(records)
        session.resolve_all(Resolution.KEEP_BOTH)
        outcome = apply_resolutions(records, session)
        assert [r.sequence_no for r in outcome.records[:2]] == [1, 2]
