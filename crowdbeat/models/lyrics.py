"""
Lyrics submissions — LyricsSubmission, LyricsVote, LyricsFeedback.

Participants write lyrics while the session is lyrics-open and vote on each
other's entries during lyrics-voting.  When the host advances past
lyrics-voting the ranking is frozen: the leader becomes ``winner``, the next
three ``runnerUp``.

Business rules (enforced by lyrics_service, backed by constraints):
    - at most ``max_lyrics_per_user`` submissions per (session, author)
    - one vote per (submission, voter); no self-votes; weight frozen at vote time
    - one feedback row per (submission, user), overwritten on resubmit
"""

from datetime import datetime, timezone

from crowdbeat.models import db
from crowdbeat.utils.helpers import isoformat

# ── Constants ─────────────────────────────────────────────────────────────────

LYRICS_STATUSES = ("pending", "approved", "rejected", "winner", "runnerUp")

# Visible to everyone in listings; pending/rejected only to staff.
PUBLIC_LYRICS_STATUSES = ("approved", "winner", "runnerUp")

# Entries that take part in the ranking.
RANKED_LYRICS_STATUSES = ("pending", "approved", "winner", "runnerUp")

SECTION_TYPES = ("verse", "chorus", "bridge", "hook", "outro", "intro", "pre-chorus")

TARGET_MOODS = (
    "happy", "sad", "energetic", "chill", "angry",
    "romantic", "inspirational", "dark", "uplifting", "melancholic",
)

MAX_LYRICS_LENGTH = 5000
MAX_SECTION_LENGTH = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _count_lines(text) -> int:
    return sum(1 for line in (text or "").split("\n") if line.strip())


class LyricsSubmission(db.Model):
    """One set of lyrics written for a session, with running vote counters."""

    __tablename__ = "lyrics_submissions"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.String(32),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    author_id = db.Column(db.String(64), nullable=False)

    title = db.Column(db.String(100), nullable=True)
    full_lyrics = db.Column(db.Text, nullable=False)
    sections = db.Column(db.JSON, nullable=False, default=list, comment="[{type, content, line_count, order}]")
    theme = db.Column(db.String(100), nullable=True)
    inspiration = db.Column(db.String(300), nullable=True)
    target_mood = db.Column(db.String(20), nullable=True)
    language = db.Column(db.String(10), nullable=False, default="en")
    is_anonymous = db.Column(db.Boolean, nullable=False, default=False)

    status = db.Column(
        db.String(20),
        nullable=False,
        default="approved",
        comment="pending | approved | rejected | winner | runnerUp",
    )
    ranking = db.Column(db.Integer, nullable=True)
    votes = db.Column(db.Integer, nullable=False, default=0)
    weighted_votes = db.Column(db.Float, nullable=False, default=0.0)
    average_rating = db.Column(db.Float, nullable=False, default=0.0)

    moderated_by = db.Column(db.String(64), nullable=True)
    moderated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    moderation_note = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    voters = db.relationship(
        "LyricsVote",
        back_populates="submission",
        order_by="LyricsVote.id",
        cascade="all, delete-orphan",
    )
    feedback = db.relationship(
        "LyricsFeedback",
        back_populates="submission",
        order_by="LyricsFeedback.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.CheckConstraint("votes >= 0", name="ck_lyrics_votes_nonneg"),
        db.Index("ix_lyrics_session_author", "session_id", "author_id"),
        db.Index("ix_lyrics_session_status", "session_id", "status"),
    )

    @property
    def word_count(self) -> int:
        return len((self.full_lyrics or "").split())

    @property
    def line_count(self) -> int:
        return _count_lines(self.full_lyrics)

    def has_voted(self, user_id) -> bool:
        return any(v.user_id == user_id for v in self.voters)

    def to_dict(self, viewer_id=None, show_votes=True, include_feedback=False) -> dict:
        data = {
            "id": self.id,
            "session_id": self.session_id,
            "author_id": None if self.is_anonymous else self.author_id,
            "is_anonymous": self.is_anonymous,
            "title": self.title,
            "full_lyrics": self.full_lyrics,
            "sections": self.sections or [],
            "theme": self.theme,
            "inspiration": self.inspiration,
            "target_mood": self.target_mood,
            "language": self.language,
            "status": self.status,
            "ranking": self.ranking,
            "word_count": self.word_count,
            "line_count": self.line_count,
            "votes": self.votes if show_votes else None,
            "weighted_votes": round(self.weighted_votes or 0.0, 2) if show_votes else None,
            "average_rating": self.average_rating,
            "feedback_count": len(self.feedback),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if viewer_id:
            data["has_voted"] = self.has_voted(viewer_id)
        if include_feedback:
            data["feedback"] = [f.to_dict() for f in self.feedback]
        return data

    def __repr__(self):
        return f"<LyricsSubmission {self.id} session={self.session_id} status={self.status}>"


class LyricsVote(db.Model):
    """One user's vote on one lyrics submission; ``weight`` is frozen at vote time."""

    __tablename__ = "lyrics_votes"

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(
        db.Integer,
        db.ForeignKey("lyrics_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(64), nullable=False)
    weight = db.Column(db.Float, nullable=False, default=1.0)
    voted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    submission = db.relationship("LyricsSubmission", back_populates="voters")

    __table_args__ = (
        db.UniqueConstraint("submission_id", "user_id", name="uq_lyrics_vote_user"),
    )


class LyricsFeedback(db.Model):
    """A 1–5 rating with optional comment on someone else's lyrics."""

    __tablename__ = "lyrics_feedback"

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(
        db.Integer,
        db.ForeignKey("lyrics_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(64), nullable=False)
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    submission = db.relationship("LyricsSubmission", back_populates="feedback")

    __table_args__ = (
        db.UniqueConstraint("submission_id", "user_id", name="uq_lyrics_feedback_user"),
        db.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_lyrics_feedback_rating_range"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "rating": self.rating,
            "comment": self.comment,
            "created_at": isoformat(self.created_at),
        }


def ranking_order():
    """ORDER BY for lyrics results: weighted votes, raw votes, then earliest."""
    return (
        LyricsSubmission.weighted_votes.desc(),
        LyricsSubmission.votes.desc(),
        LyricsSubmission.created_at,
        LyricsSubmission.id,
    )
