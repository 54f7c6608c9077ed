"""Tests for merging indexed and fresh event sequences."""

from __future__ import annotations

from factories import PROVIDER, event, granted, revoked

from chainconsent.indexing.merge import backfill_request_details, merge_events
from chainconsent.models import EventType


class TestMergeEvents:
    def test_overlapping_windows_yield_each_fact_once(self) -> None:
        indexed = [granted(0, 10), revoked(0, 12)]
        fresh = [revoked(0, 12), granted(1, 13)]

        merged = merge_events(indexed, fresh)

        keys = [e.dedup_key for e in merged]
        assert len(keys) == len(set(keys)) == 3

    def test_merging_the_same_sequence_twice_is_idempotent(self) -> None:
        events = [granted(0, 10), revoked(0, 12), granted(1, 13)]
        assert merge_events(events, events) == merge_events(events, [])

    def test_indexed_copy_wins(self) -> None:
        indexed = [granted(0, 10, purposes=("indexed",))]
        fresh = [granted(0, 10, purposes=("fresh",))]

        merged = merge_events(indexed, fresh)

        assert len(merged) == 1
        assert merged[0].purposes == ("indexed",)

    def test_sorted_by_block_then_log_index(self) -> None:
        a = granted(0, 20, tx="0xa", log_index=1)
        b = granted(1, 20, tx="0xb", log_index=0)
        c = granted(2, 5, tx="0xc", log_index=3)

        merged = merge_events([a], [b, c])

        assert [e.consent_id for e in merged] == [2, 1, 0]

    def test_missing_log_index_keeps_insertion_order(self) -> None:
        first = granted(0, 7, tx="0x1", log_index=None)
        second = granted(1, 7, tx="0x2", log_index=None)

        assert [e.consent_id for e in merge_events([first], [second])] == [0, 1]
        assert [e.consent_id for e in merge_events([second], [first])] == [1, 0]

    def test_batch_grant_ids_share_a_transaction(self) -> None:
        # One log, two consent ids: both survive dedup
        a = granted(0, 9, tx="0xbatch")
        b = granted(1, 9, tx="0xbatch")
        assert len(merge_events([a, b], [])) == 2

    def test_dedup_falls_back_to_type_without_subject(self) -> None:
        a = event(EventType.CONSENT_REVOKED, 4, tx="0xsame")
        b = event(EventType.CONSENT_REVOKED, 4, tx="0xsame")
        assert len(merge_events([a], [b])) == 1


class TestBackfillRequestDetails:
    def test_response_inherits_request_details(self) -> None:
        requested = event(
            EventType.ACCESS_REQUESTED,
            3,
            request_id=5,
            provider=PROVIDER,
            data_types=("imaging",),
            purposes=("research",),
        )
        approved = event(EventType.ACCESS_APPROVED, 4, request_id=5, consent_ids=(9,))

        out = backfill_request_details([requested, approved])

        assert out[1].provider == PROVIDER
        assert out[1].data_types == ("imaging",)
        assert out[1].purposes == ("research",)
        assert out[0] is requested

    def test_orphan_response_is_left_alone(self) -> None:
        denied = event(EventType.ACCESS_DENIED, 4, request_id=8)
        assert backfill_request_details([denied]) == [denied]
