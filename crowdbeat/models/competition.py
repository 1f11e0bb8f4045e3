"""
Element competitions — ElementCompetition, CompetitionSubmission,
CompetitionSubmissionVoter.

A competition is a bounded submission-then-vote contest for filling one
element slot with user-generated audio.

Lifecycle:
    draft → open → voting → closed
    draft | open | voting → cancelled

Business rules (enforced by competition_service, backed by constraints):
    - submissions are accepted only while open and before submission_deadline
    - a user never holds more than max_submissions_per_user submissions
    - votes are accepted only while voting; no self-votes, one vote per
      (submission, voter) via a unique constraint
    - closing is a compare-and-set on status; winner fields are frozen after
"""

import uuid
from datetime import datetime, timezone

from crowdbeat.models import db
from crowdbeat.utils.helpers import isoformat

# ── Constants ─────────────────────────────────────────────────────────────────

COMPETITION_ELEMENT_TYPES = (
    "hihat", "kick", "snare", "drums",
    "bass", "melody", "vocals", "synth", "pad", "lead",
    "intro", "verse", "chorus", "bridge", "outro",
    "mix", "master", "arrangement",
)

COMPETITION_STATUSES = ("draft", "open", "voting", "closed", "cancelled")

SUBMISSION_STATUSES = ("pending", "approved", "winner", "runnerUp", "rejected")

DEFAULT_PRIZE = {"reputation_points": 50}


def _uuid() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ElementCompetition(db.Model):
    """A judged contest for one element type inside a session."""

    __tablename__ = "element_competitions"

    id = db.Column(db.String(32), primary_key=True, default=_uuid)
    session_id = db.Column(
        db.String(32),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    element_type = db.Column(db.String(20), nullable=False, comment="One of COMPETITION_ELEMENT_TYPES")
    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(1000), nullable=True)
    guidelines = db.Column(db.String(2000), nullable=True)
    requirements = db.Column(
        db.JSON,
        nullable=True,
        comment="bpm, key, min/max duration, file formats, max file size",
    )

    submission_deadline = db.Column(db.DateTime(timezone=True), nullable=False)
    voting_deadline = db.Column(db.DateTime(timezone=True), nullable=True)
    max_submissions_per_user = db.Column(db.Integer, nullable=False, default=1)

    status = db.Column(
        db.String(20),
        nullable=False,
        default="draft",
        comment="draft | open | voting | closed | cancelled",
    )

    # Frozen once status=closed
    winner_id = db.Column(db.String(64), nullable=True)
    winning_submission_index = db.Column(db.Integer, nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    prize = db.Column(db.JSON, nullable=False, default=lambda: dict(DEFAULT_PRIZE))

    total_submissions = db.Column(db.Integer, nullable=False, default=0)
    total_votes = db.Column(db.Integer, nullable=False, default=0)
    unique_participants = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    submissions = db.relationship(
        "CompetitionSubmission",
        back_populates="competition",
        order_by="CompetitionSubmission.index",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.CheckConstraint("max_submissions_per_user >= 1", name="ck_competition_max_subs"),
        db.Index("ix_competition_session_status", "session_id", "status"),
    )

    def submission_at(self, index):
        for sub in self.submissions:
            if sub.index == index:
                return sub
        return None

    def submissions_by(self, user_id) -> list:
        return [s for s in self.submissions if s.user_id == user_id]

    def to_dict(self, viewer_id=None, include_submissions=True) -> dict:
        data = {
            "id": self.id,
            "session_id": self.session_id,
            "element_type": self.element_type,
            "title": self.title,
            "description": self.description,
            "guidelines": self.guidelines,
            "requirements": self.requirements or {},
            "submission_deadline": isoformat(self.submission_deadline),
            "voting_deadline": isoformat(self.voting_deadline),
            "max_submissions_per_user": self.max_submissions_per_user,
            "status": self.status,
            "winner_id": self.winner_id,
            "winning_submission_index": self.winning_submission_index,
            "closed_at": isoformat(self.closed_at),
            "prize": self.prize or {},
            "stats": {
                "total_submissions": self.total_submissions,
                "total_votes": self.total_votes,
                "unique_participants": self.unique_participants,
            },
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
        }
        if include_submissions:
            data["submissions"] = [s.to_dict(viewer_id) for s in self.submissions]
        return data

    def __repr__(self):
        return f"<ElementCompetition {self.id} {self.element_type} status={self.status}>"


class CompetitionSubmission(db.Model):
    """One entry in a competition; ``index`` is its stable position."""

    __tablename__ = "competition_submissions"

    id = db.Column(db.Integer, primary_key=True)
    competition_id = db.Column(
        db.String(32),
        db.ForeignKey("element_competitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    index = db.Column("submission_index", db.Integer, nullable=False)
    user_id = db.Column(db.String(64), nullable=False)
    audio_url = db.Column(db.String(500), nullable=False)
    waveform_data = db.Column(db.JSON, nullable=True)
    description = db.Column(db.String(500), nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=True)

    votes = db.Column(db.Integer, nullable=False, default=0)
    weighted_votes = db.Column(db.Float, nullable=False, default=0.0)
    status = db.Column(
        db.String(20),
        nullable=False,
        default="pending",
        comment="pending | approved | winner | runnerUp | rejected",
    )
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    competition = db.relationship("ElementCompetition", back_populates="submissions")
    voters = db.relationship(
        "CompetitionSubmissionVoter",
        back_populates="submission",
        order_by="CompetitionSubmissionVoter.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("competition_id", "submission_index", name="uq_submission_competition_index"),
        db.CheckConstraint("votes >= 0", name="ck_submission_votes_nonneg"),
    )

    def has_voted(self, user_id) -> bool:
        return any(v.user_id == user_id for v in self.voters)

    def to_dict(self, viewer_id=None) -> dict:
        data = {
            "index": self.index,
            "user_id": self.user_id,
            "audio_url": self.audio_url,
            "waveform_data": self.waveform_data,
            "description": self.description,
            "metadata": self.meta,
            "votes": self.votes,
            "weighted_votes": round(self.weighted_votes or 0.0, 2),
            "status": self.status,
            "submitted_at": isoformat(self.submitted_at),
        }
        if viewer_id:
            data["has_voted"] = self.has_voted(viewer_id)
        return data


class CompetitionSubmissionVoter(db.Model):
    """Voter identity on a submission; unique per (submission, user)."""

    __tablename__ = "competition_submission_voters"

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(
        db.Integer,
        db.ForeignKey("competition_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(64), nullable=False)
    weight = db.Column(db.Float, nullable=False, default=1.0, comment="Snapshot at vote time")
    voted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    submission = db.relationship("CompetitionSubmission", back_populates="voters")

    __table_args__ = (
        db.UniqueConstraint("submission_id", "user_id", name="uq_submission_voter_user"),
    )
