"""Tests for OpportunityStageMachine against the in-memory record store.

Covers pool exclusivity, the append-only activity log, the conversion saga
(emitter gating and idempotency), background contact sync outcomes, and
concurrent writers racing on one record.
"""

from __future__ import annotations

import asyncio

import pytest

from src.agency.pipeline.errors import (
    ConversionFailure,
    InvalidTransitionError,
    OpportunityNotFoundError,
    PersistenceFailure,
)
from src.agency.pipeline.machine import OpportunityStageMachine
from src.agency.pipeline.schemas import (
    POOL_COLLECTIONS,
    ActivityType,
    ContactChannel,
    ContactMethod,
    CustomerCreate,
    OpportunityCreate,
    OutreachStatus,
    Pool,
    Stage,
    TransitionKind,
    TransitionRequest,
)
from src.agency.services.customers import CLIENTS_COLLECTION, StoreCustomerEmitter
from src.agency.store.adapter import CreateOp, DeleteOp, UpdateOp

TOKEN = "ya29.test-token"


async def _create(machine, name: str = "Lotus Bakery"):
    return await machine.create_opportunity(
        OpportunityCreate(
            display_name=name,
            organization="Lotus Bakery LLC",
            contact_methods=[
                ContactMethod(type=ContactChannel.PHONE, value="+15550100"),
                ContactMethod(type=ContactChannel.EMAIL, value="owner@lotus.example"),
            ],
            value=1200.0,
        )
    )


async def _to_stage(machine, opp_id: str, *stages: Stage):
    result = None
    for stage in stages:
        result = await machine.transition(opp_id, TransitionRequest(stage=stage))
    return result


def _pools_holding(store, opp_id: str) -> list[Pool]:
    return [pool for pool, name in POOL_COLLECTIONS.items() if opp_id in store.ids(name)]


# ── Creation and Lookup ──────────────────────────────────────────────────────


class TestCreateAndGet:
    async def test_create_lands_in_prospect_with_zero_score(self, machine, store):
        opp = await _create(machine)

        assert opp.pool is Pool.PROSPECT
        assert opp.score == 0
        assert opp.activities == []
        assert opp.version == 1
        assert _pools_holding(store, opp.id) == [Pool.PROSPECT]

    async def test_get_unknown_id_raises_not_found(self, machine):
        with pytest.raises(OpportunityNotFoundError):
            await machine.get_opportunity("missing")

    async def test_transition_unknown_id_raises_not_found(self, machine):
        with pytest.raises(OpportunityNotFoundError):
            await machine.transition("missing", TransitionRequest(pool=Pool.ACTIVE_DEAL))

    async def test_record_in_two_pools_is_reported(self, machine, store):
        opp = await _create(machine)
        await store.commit(
            [CreateOp(POOL_COLLECTIONS[Pool.NURTURE], {"display_name": "dup"}, opp.id)]
        )

        with pytest.raises(PersistenceFailure, match="more than one pool"):
            await machine.get_opportunity(opp.id)

    async def test_list_pool_only_returns_that_pool(self, machine):
        first = await _create(machine, "First")
        second = await _create(machine, "Second")
        await machine.transition(second.id, TransitionRequest(pool=Pool.DORMANT))

        prospects = await machine.list_pool(Pool.PROSPECT)
        dormant = await machine.list_pool(Pool.DORMANT)

        assert [o.id for o in prospects] == [first.id]
        assert [o.id for o in dormant] == [second.id]


# ── Transition Table ─────────────────────────────────────────────────────────


class TestTransitions:
    async def test_interested_moves_to_active_deal(self, machine, store):
        """Prospect + Interested -> ActiveDeal @ New Prospect, score 20, one entry."""
        opp = await _create(machine)

        result = await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))

        assert result.kind is TransitionKind.INTERESTED
        assert result.pool is Pool.ACTIVE_DEAL
        moved = result.opportunity
        assert moved.stage is Stage.NEW_PROSPECT
        assert moved.score == 20
        assert len(moved.activities) == 1
        assert _pools_holding(store, opp.id) == [Pool.ACTIVE_DEAL]

    async def test_outreach_marks_stay_in_prospect(self, machine):
        opp = await _create(machine)

        await machine.transition(opp.id, TransitionRequest(outreach=OutreachStatus.MESSAGE_SENT))
        result = await machine.transition(
            opp.id, TransitionRequest(outreach=OutreachStatus.REPLIED)
        )

        updated = result.opportunity
        assert updated.pool is Pool.PROSPECT
        assert updated.outreach_status is OutreachStatus.REPLIED
        assert updated.attempt_count == 1
        assert updated.score == 10
        assert len(updated.activities) == 2

    async def test_closed_lost_lands_in_dormant_tagged_lost(self, machine, store):
        """ActiveDeal @ Negotiation -> Closed Lost -> Dormant, lost, old/new logged."""
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))
        await _to_stage(machine, opp.id, Stage.NEGOTIATION)
        await machine.drain()

        result = await machine.transition(opp.id, TransitionRequest(stage=Stage.CLOSED_LOST))

        lost = result.opportunity
        assert lost.pool is Pool.DORMANT
        assert lost.lost is True
        assert lost.lost_at is not None
        entry = lost.activities[-1]
        assert entry.old_value == "Negotiation"
        assert entry.new_value == "Closed Lost"
        assert _pools_holding(store, opp.id) == [Pool.DORMANT]

    async def test_not_now_without_reason_mutates_nothing(self, machine, store):
        opp = await _create(machine)
        commits_before = len(store.commits)

        with pytest.raises(InvalidTransitionError):
            await machine.transition(opp.id, TransitionRequest(pool=Pool.NURTURE))

        assert len(store.commits) == commits_before
        assert (await machine.get_opportunity(opp.id)).version == opp.version

    async def test_suppressed_is_terminal(self, machine):
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.SUPPRESSED))

        with pytest.raises(InvalidTransitionError):
            await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))

    async def test_note_only_request_appends_note(self, machine):
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.DORMANT))

        result = await machine.transition(opp.id, TransitionRequest(note="Try after Eid"))

        assert result.kind is TransitionKind.NOTE
        assert result.pool is Pool.DORMANT
        assert result.opportunity.activities[-1].type is ActivityType.NOTE

    async def test_activity_log_is_append_only(self, machine):
        opp = await _create(machine)
        requests = [
            TransitionRequest(outreach=OutreachStatus.MESSAGE_SENT),
            TransitionRequest(pool=Pool.ACTIVE_DEAL),
            TransitionRequest(stage=Stage.QUALIFIED, note="Good fit"),
            TransitionRequest(pool=Pool.NURTURE),
            TransitionRequest(stage=Stage.CONTACTED),
        ]
        history = []
        for request in requests:
            result = await machine.transition(opp.id, request)
            current = result.opportunity.activities
            assert current[: len(history)] == history
            assert len(current) == len(history) + 1
            history = current

    async def test_pool_exclusivity_across_every_move(self, machine, store):
        opp = await _create(machine)
        requests = [
            TransitionRequest(pool=Pool.ACTIVE_DEAL),
            TransitionRequest(pool=Pool.NURTURE),
            TransitionRequest(stage=Stage.QUALIFIED),
            TransitionRequest(stage=Stage.CLOSED_LOST),
            TransitionRequest(pool=Pool.ACTIVE_DEAL),
        ]
        for request in requests:
            await machine.transition(opp.id, request)
            assert len(_pools_holding(store, opp.id)) == 1

    async def test_pool_exclusivity_visible_to_subscribers(self, machine, store):
        """Every change event observes the record in exactly one pool."""
        opp = await _create(machine)
        observed: list[int] = []

        def _check(event):
            observed.append(len(_pools_holding(store, opp.id)))

        for pool in (Pool.PROSPECT, Pool.ACTIVE_DEAL):
            store.subscribe(POOL_COLLECTIONS[pool], _check)

        await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))

        assert observed
        assert all(count == 1 for count in observed)

    async def test_identical_sequences_give_identical_scores(self, machine):
        requests = [
            TransitionRequest(outreach=OutreachStatus.REPLIED),
            TransitionRequest(pool=Pool.ACTIVE_DEAL),
            TransitionRequest(stage=Stage.QUALIFIED),
            TransitionRequest(stage=Stage.PROPOSAL_SENT),
            TransitionRequest(pool=Pool.NURTURE),
            TransitionRequest(stage=Stage.NEGOTIATION),
        ]
        scores = []
        for name in ("Twin A", "Twin B"):
            opp = await _create(machine, name)
            for request in requests:
                result = await machine.transition(opp.id, request)
            scores.append(result.opportunity.score)
        await machine.drain()

        assert scores[0] == scores[1] == 65


# ── Contact Sync ─────────────────────────────────────────────────────────────


class TestContactSync:
    async def test_proposal_sent_syncs_in_background(self, machine, contact_sync):
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))

        result = await machine.transition(
            opp.id, TransitionRequest(stage=Stage.PROPOSAL_SENT, sync_token=TOKEN)
        )
        assert result.sync_scheduled is True
        await machine.drain()

        token, payload = contact_sync.calls[0]
        assert token == TOKEN
        assert payload.role == "Prospect (Proposal Sent)"
        assert payload.phone == "+15550100"
        assert payload.email == "owner@lotus.example"

        current = await machine.get_opportunity(opp.id)
        assert current.google_resource_name == "people/c100"
        last = current.activities[-1]
        assert last.type is ActivityType.CONTACT_SYNC
        assert "synced as people/c100" in last.description
        # The stage entry itself is never edited
        assert current.activities[-2].new_value == "Proposal Sent"

    async def test_sync_failure_never_blocks_the_move(self, machine, contact_sync, store):
        """Nurture -> Proposal Sent with failing sync still lands in ActiveDeal."""
        contact_sync.fail = True
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.NURTURE, reason="Budget"))

        result = await machine.transition(
            opp.id, TransitionRequest(stage=Stage.PROPOSAL_SENT, sync_token=TOKEN)
        )
        await machine.drain()

        assert result.kind is TransitionKind.REACTIVATE
        assert result.opportunity.stage is Stage.PROPOSAL_SENT
        assert _pools_holding(store, opp.id) == [Pool.ACTIVE_DEAL]
        assert len(contact_sync.calls) == 1

        current = await machine.get_opportunity(opp.id)
        assert current.google_resource_name is None
        assert "failed (quota exceeded)" in current.activities[-1].description

    async def test_sync_timeout_is_logged_as_failure(self, machine, contact_sync):
        contact_sync.delay = 1.0
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))

        await machine.transition(
            opp.id, TransitionRequest(stage=Stage.NEGOTIATION, sync_token=TOKEN)
        )
        await machine.drain()

        current = await machine.get_opportunity(opp.id)
        assert "timed out" in current.activities[-1].description

    async def test_missing_token_skips_sync(self, machine, contact_sync):
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))

        await machine.transition(opp.id, TransitionRequest(stage=Stage.NEGOTIATION))
        await machine.drain()

        assert contact_sync.calls == []
        current = await machine.get_opportunity(opp.id)
        assert "no access token" in current.activities[-1].description

    async def test_existing_resource_name_is_updated_not_created(self, machine, contact_sync):
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))
        await machine.transition(
            opp.id, TransitionRequest(stage=Stage.PROPOSAL_SENT, sync_token=TOKEN)
        )
        await machine.drain()

        await machine.transition(
            opp.id, TransitionRequest(stage=Stage.NEGOTIATION, sync_token=TOKEN)
        )
        await machine.drain()

        assert contact_sync.calls[1][1].external_id == "people/c100"


# ── Conversion Saga ──────────────────────────────────────────────────────────


class TestConversion:
    async def test_closed_won_creates_customer_then_deletes(self, machine, emitter, store):
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))

        result = await machine.transition(
            opp.id, TransitionRequest(stage=Stage.CLOSED_WON, sync_token=TOKEN)
        )

        assert result.kind is TransitionKind.CONVERT
        assert result.pool is Pool.CONVERTED
        assert result.opportunity is None
        assert result.customer_id == f"opp-{opp.id}"
        assert _pools_holding(store, opp.id) == []

        customer = emitter.customers[opp.id]
        assert customer.name == "Lotus Bakery"
        assert customer.company_name == "Lotus Bakery LLC"
        assert customer.mobile == "+15550100"
        assert customer.google_resource_name == "people/c100"
        assert customer.source_opportunity_id == opp.id
        assert customer.score == 20
        final = customer.activities[-1]
        assert final.type is ActivityType.CONVERSION
        assert "Contact sync: synced as people/c100" in final.description

    async def test_emitter_failure_leaves_record_untouched(self, machine, emitter, store):
        """Closed Won with a failing emitter -> ConversionFailure, record unchanged."""
        emitter.fail = True
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))
        before = await machine.get_opportunity(opp.id)

        with pytest.raises(ConversionFailure):
            await machine.transition(opp.id, TransitionRequest(stage=Stage.CLOSED_WON))

        after = await machine.get_opportunity(opp.id)
        assert after == before
        assert _pools_holding(store, opp.id) == [Pool.ACTIVE_DEAL]
        assert emitter.customers == {}

    async def test_sync_failure_does_not_stop_conversion(self, machine, contact_sync, emitter):
        contact_sync.fail = True
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.DORMANT))

        result = await machine.transition(
            opp.id, TransitionRequest(stage=Stage.CLOSED_WON, sync_token=TOKEN)
        )

        assert result.customer_id == f"opp-{opp.id}"
        assert "failed (quota exceeded)" in emitter.customers[opp.id].activities[-1].description

    async def test_retry_after_delete_conflict_refreshes_customer(self, machine, emitter, store):
        """A concurrent write between emit and delete reaches the same customer."""
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))
        collection = POOL_COLLECTIONS[Pool.ACTIVE_DEAL]

        original = emitter.create_customer

        async def _emit_then_touch(fields, idempotency_key):
            customer_id = await original(fields, idempotency_key)
            if emitter.calls == 1:
                await store.commit([UpdateOp(collection, opp.id, {"value": 999.0})])
            return customer_id

        emitter.create_customer = _emit_then_touch

        result = await machine.transition(opp.id, TransitionRequest(stage=Stage.CLOSED_WON))

        assert result.customer_id == f"opp-{opp.id}"
        assert emitter.calls == 2
        assert list(emitter.customers) == [opp.id]
        assert emitter.customers[opp.id].value == 999.0
        assert _pools_holding(store, opp.id) == []

    async def test_store_emitter_repeat_key_overwrites_customer(self, store):
        customers = StoreCustomerEmitter(store)
        first = CustomerCreate(name="Lotus Bakery", source_opportunity_id="o-1", value=1200.0)
        fresher = first.model_copy(update={"value": 999.0})

        created = await customers.create_customer(first, idempotency_key="o-1")
        refreshed = await customers.create_customer(fresher, idempotency_key="o-1")

        assert created == refreshed == "opp-o-1"
        assert store.ids(CLIENTS_COLLECTION) == {"opp-o-1"}
        assert store.document(CLIENTS_COLLECTION, "opp-o-1")["value"] == 999.0


# ── Concurrency and Persistence ──────────────────────────────────────────────


class TestConcurrency:
    async def test_racing_transitions_both_apply(self, machine):
        opp = await _create(machine)
        await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))

        await asyncio.gather(
            machine.transition(opp.id, TransitionRequest(note="first")),
            machine.transition(opp.id, TransitionRequest(note="second")),
        )

        current = await machine.get_opportunity(opp.id)
        notes = {a.description for a in current.activities if a.type is ActivityType.NOTE}
        assert notes == {"first", "second"}

    async def test_store_failure_is_persistence_failure(self, machine, store):
        opp = await _create(machine)
        store.fail_commit = lambda ops: any(isinstance(op, DeleteOp) for op in ops)

        with pytest.raises(PersistenceFailure):
            await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))

        assert _pools_holding(store, opp.id) == [Pool.PROSPECT]

    async def test_endless_conflicts_exhaust_retries(self, repository, emitter, store):
        machine = OpportunityStageMachine(repository, emitter, conflict_retries=2)
        opp = await _create(machine)
        collection = POOL_COLLECTIONS[Pool.PROSPECT]

        original_commit = store.commit

        async def _commit_after_rival(ops):
            if any(isinstance(op, DeleteOp) for op in ops):
                await original_commit([UpdateOp(collection, opp.id, {"value": 1.0})])
            return await original_commit(ops)

        store.commit = _commit_after_rival

        with pytest.raises(PersistenceFailure, match="kept changing"):
            await machine.transition(opp.id, TransitionRequest(pool=Pool.ACTIVE_DEAL))

        store.commit = original_commit
        assert _pools_holding(store, opp.id) == [Pool.PROSPECT]
