"""
Explicit DTO projections. Built by the coordinator from aggregates it already loaded,
inside the unit of work, so nothing lazy leaks past the commit.
"""
from __future__ import annotations

from typing import List, Optional, Sequence

from rental_core.models.contract import Contract
from rental_core.models.dispute import Dispute
from rental_core.models.escrow_entry import EscrowEntry
from rental_core.models.otp_challenge import OtpChallenge
from rental_core.models.signature import Signature
from rental_core.models.status_history import StatusHistoryEntry
from rental_core.schemas.contracts import (
    AuditTrailView,
    ContractView,
    HistoryEntryView,
    SignatureChallengeView,
    SignatureView,
)
from rental_core.schemas.disputes import DisputeView
from rental_core.schemas.escrow import EscrowEntryView


def _iso(dt):
    return dt.isoformat() if dt else None


def _str(v) -> Optional[str]:
    return str(v) if v is not None else None


def escrow_entry_view(e: EscrowEntry) -> EscrowEntryView:
    return EscrowEntryView(
        entryId=str(e.id),
        contractId=str(e.contract_id),
        kind=e.kind,
        splitFromEntryId=_str(e.split_from_entry_id),
        payerId=e.payer_id,
        beneficiaryId=e.beneficiary_id,
        amount=str(e.amount),
        currency=e.currency,
        dueDate=e.due_date.isoformat(),
        status=e.status,
        version=e.version,
        frozenByDisputeId=_str(e.frozen_by_dispute_id),
        needsAttention=bool(e.needs_attention),
        lastError=e.last_error,
        capturedAtIso=_iso(e.captured_at),
        autoReleaseAtIso=_iso(e.auto_release_at),
        beneficiaryConfirmedAtIso=_iso(e.beneficiary_confirmed_at),
        releasedAtIso=_iso(e.released_at),
        refundedAtIso=_iso(e.refunded_at),
        releasedAmount=_str(e.released_amount),
        refundedAmount=_str(e.refunded_amount),
        payoutStatus=e.payout_status,
    )


def signature_view(s: Signature) -> SignatureView:
    return SignatureView(
        role=s.role,
        signerId=s.signer_id,
        otpVerifiedAtIso=_iso(s.otp_verified_at),
        signedAtIso=_iso(s.signed_at),
        contentHash=s.content_hash,
        signatureHash=s.signature_hash,
    )


def contract_view(
    c: Contract,
    *,
    signatures: Sequence[Signature] = (),
    entries: Sequence[EscrowEntry] = (),
    waiting_on: Sequence[str] = (),
) -> ContractView:
    return ContractView(
        contractId=str(c.id),
        reference=c.reference,
        listingId=c.listing_id,
        landlordId=c.landlord_id,
        tenantId=c.tenant_id,
        monthlyAmount=str(c.monthly_amount),
        currency=c.currency,
        startDate=c.start_date.isoformat(),
        endDate=c.end_date.isoformat(),
        customFields=c.custom_fields_json or {},
        contentHash=c.content_hash,
        status=c.status,
        version=c.version,
        signatureCount=c.signature_count,
        signatures=[signature_view(s) for s in signatures],
        waitingOn=list(waiting_on),
        documentStatus=c.document_status,
        documentRef=c.document_ref,
        documentSha256=c.document_sha256,
        createdAtIso=_iso(c.created_at),
        fullySignedAtIso=_iso(c.fully_signed_at),
        retractionExpiresAtIso=_iso(c.retraction_expires_at),
        activatedAtIso=_iso(c.activated_at),
        terminatedAtIso=_iso(c.terminated_at),
        cancelledAtIso=_iso(c.cancelled_at),
        closingReason=c.closing_reason,
        nextDueDate=c.next_due_date.isoformat() if c.next_due_date else None,
        escrowEntries=[escrow_entry_view(e) for e in entries],
    )


def challenge_view(ch: OtpChallenge, role: str) -> SignatureChallengeView:
    return SignatureChallengeView(challengeId=str(ch.id), role=role, expiresAtIso=_iso(ch.expires_at))


def dispute_view(d: Dispute) -> DisputeView:
    return DisputeView(
        disputeId=str(d.id),
        reference=d.reference,
        contractId=str(d.contract_id),
        escrowEntryId=_str(d.escrow_entry_id),
        claimantId=d.claimant_id,
        respondentId=d.respondent_id,
        category=d.category,
        motif=d.motif,
        description=d.description,
        evidence=list(d.evidence_json or []),
        mediatorId=d.mediator_id,
        status=d.status,
        version=d.version,
        outcome=d.outcome,
        resolutionNotes=d.resolution_notes,
        splitReleaseAmount=_str(d.split_release_amount),
        openedAtIso=_iso(d.opened_at),
        assignedAtIso=_iso(d.assigned_at),
        resolvedAtIso=_iso(d.resolved_at),
        withdrawnAtIso=_iso(d.withdrawn_at),
        slaFlagged=d.sla_flagged_at is not None,
    )


def audit_trail_view(
    entity_type: str, entity_id, entries: List[StatusHistoryEntry], *, chain_valid: bool
) -> AuditTrailView:
    return AuditTrailView(
        entityType=entity_type,
        entityId=str(entity_id),
        chainValid=chain_valid,
        entries=[
            HistoryEntryView(
                seq=e.seq,
                fromStatus=e.from_status,
                toStatus=e.to_status,
                event=e.event,
                actorId=e.actor_id,
                atIso=_iso(e.created_at),
                entryHash=e.entry_hash,
            )
            for e in entries
        ],
    )
