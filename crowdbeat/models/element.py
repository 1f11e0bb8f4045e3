"""
Element voting — ElementOption, ElementOptionVoter, ElementVote.

An *element* is a named, votable property of the song under construction
(tempo, key, drum pattern, chorus, final mix ...).  Each ElementOption is one
candidate value for one element type; its ``votes`` / ``weighted_votes``
columns are running aggregates, changed only through atomic SQL increments.

ElementOptionVoter holds the voter identities of an option (one row per
user, unique), so ``votes == count(voters)`` always.  The weight is stored
on the row at vote time so removal is the exact inverse of the add.

ElementVote is the ledger: one durable record per
(session, user, element_type, element_id), upserted on re-vote, deleted on
vote removal.  It is the source of truth the option counters can be rebuilt
from (see vote_ledger.recompute_option_counters).
"""

import uuid
from datetime import datetime, timezone

from crowdbeat.models import db
from crowdbeat.utils.helpers import isoformat

# ── Constants ─────────────────────────────────────────────────────────────────

ELEMENT_TYPES = (
    # Tempo / key
    "bpm", "tempo", "key",
    # Drums
    "hihat", "kick", "snare", "drums",
    # Instruments
    "bass", "melody", "vocals", "synth", "pad", "lead",
    # Structure
    "intro", "verse", "pre-chorus", "chorus", "bridge", "hook", "outro",
    # Overall / production
    "overall", "mix", "master", "arrangement",
    # Effects
    "reverb", "delay", "compression",
)

OPTION_STATUSES = ("pending", "selected", "rejected", "alternative")

# -1 reject, 1 approve, 2..5 rating (1 doubles as the lowest rating)
VOTE_VALUES = (-1, 1, 2, 3, 4, 5)


def _uuid() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ElementOption(db.Model):
    """One candidate value for one element type, optionally scoped to a song."""

    __tablename__ = "element_options"

    id = db.Column(db.String(32), primary_key=True, default=_uuid)
    session_id = db.Column(
        db.String(32),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    song_id = db.Column(
        db.Integer,
        db.ForeignKey("session_songs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    element_type = db.Column(db.String(20), nullable=False, comment="One of ELEMENT_TYPES")
    option_id = db.Column(
        db.String(80),
        nullable=False,
        comment="Caller-facing id, unique per session (e.g. 'bpm-1a2b3c4d')",
    )

    label = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    audio_url = db.Column(db.String(500), nullable=True)
    waveform_data = db.Column(db.JSON, nullable=True)
    image_url = db.Column(db.String(500), nullable=True)
    value = db.Column(db.JSON, nullable=True, comment="Number, string or structured payload")
    meta = db.Column("metadata", db.JSON, nullable=True)

    votes = db.Column(db.Integer, nullable=False, default=0)
    weighted_votes = db.Column(db.Float, nullable=False, default=0.0)

    status = db.Column(
        db.String(20),
        nullable=False,
        default="pending",
        comment="pending | selected | rejected | alternative",
    )
    created_by = db.Column(db.String(64), nullable=False)
    is_user_submitted = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    voters = db.relationship(
        "ElementOptionVoter",
        back_populates="option",
        order_by="ElementOptionVoter.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("session_id", "option_id", name="uq_option_session_option_id"),
        db.CheckConstraint("votes >= 0", name="ck_option_votes_nonneg"),
        db.Index("ix_option_session_type", "session_id", "element_type"),
    )

    def has_voted(self, user_id) -> bool:
        return any(v.user_id == user_id for v in self.voters)

    def to_dict(self, viewer_id=None) -> dict:
        data = {
            "id": self.id,
            "session_id": self.session_id,
            "song_id": self.song_id,
            "element_type": self.element_type,
            "option_id": self.option_id,
            "label": self.label,
            "description": self.description,
            "audio_url": self.audio_url,
            "waveform_data": self.waveform_data,
            "image_url": self.image_url,
            "value": self.value,
            "metadata": self.meta,
            "votes": self.votes,
            "weighted_votes": round(self.weighted_votes or 0.0, 2),
            "status": self.status,
            "created_by": self.created_by,
            "is_user_submitted": self.is_user_submitted,
            "order": self.sort_order,
            "created_at": isoformat(self.created_at),
        }
        if viewer_id:
            data["has_voted"] = self.has_voted(viewer_id)
        return data

    def __repr__(self):
        return f"<ElementOption {self.option_id} votes={self.votes}>"


class ElementOptionVoter(db.Model):
    """Voter identity on an option; unique per (option, user)."""

    __tablename__ = "element_option_voters"

    id = db.Column(db.Integer, primary_key=True)
    option_pk = db.Column(
        db.String(32),
        db.ForeignKey("element_options.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(64), nullable=False)
    weight = db.Column(db.Float, nullable=False, default=1.0, comment="Snapshot at vote time")
    voted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    option = db.relationship("ElementOption", back_populates="voters")

    __table_args__ = (
        db.UniqueConstraint("option_pk", "user_id", name="uq_option_voter_user"),
    )


class ElementVote(db.Model):
    """Ledger record: one per (session, user, element_type, element_id)."""

    __tablename__ = "element_votes"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.String(32),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    song_id = db.Column(
        db.Integer,
        db.ForeignKey("session_songs.id", ondelete="SET NULL"),
        nullable=True,
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    element_type = db.Column(db.String(20), nullable=False)
    element_id = db.Column(db.String(80), nullable=False, comment="ElementOption.option_id")
    value = db.Column(db.JSON, nullable=True, comment="Snapshot of the option value voted for")
    vote_value = db.Column(
        db.Integer,
        nullable=False,
        default=1,
        comment="-1 reject | 1 approve | 1–5 rating",
    )
    weight = db.Column(db.Float, nullable=False, default=1.0, comment="Snapshot at vote time")
    comment = db.Column(db.String(200), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    __table_args__ = (
        db.UniqueConstraint(
            "session_id", "user_id", "element_type", "element_id",
            name="uq_element_vote_slot",
        ),
        db.CheckConstraint(
            "vote_value IN (-1, 1, 2, 3, 4, 5)", name="ck_element_vote_value",
        ),
        db.Index("ix_element_vote_session_element", "session_id", "element_type", "element_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "song_id": self.song_id,
            "user_id": self.user_id,
            "element_type": self.element_type,
            "element_id": self.element_id,
            "value": self.value,
            "vote_value": self.vote_value,
            "weight": self.weight,
            "comment": self.comment,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ElementVote {self.element_type}/{self.element_id} user={self.user_id} value={self.vote_value}>"
