"""
Session aggregate — Session + its child tables.

The Session is the aggregate root of a crowd-writing run.  Its collections
(participants, queued songs with their votes, feedback, bans, mutes) are
child tables keyed by ``session_id``; each row has a stable integer id and is
mutated in place, never re-created, so historical membership and moderation
state can always be reconstructed.

Invariants held here (enforced by the services, backed by constraints):
    - ``stage`` is always the image of ``status`` under STAGE_BY_STATUS
      (paused / cancelled keep the stage they were entered from).
    - at most one participant row per (session, user)
    - at most one ban row and one mute row per (session, user); a newer
      ban/mute replaces the earlier one.
    - sessions are never hard-deleted; they end in completed / cancelled.
"""

import uuid
from datetime import datetime, timezone

from crowdbeat.models import db
from crowdbeat.utils.helpers import isoformat

# ── Constants ─────────────────────────────────────────────────────────────────

SESSION_STATUSES = (
    "draft",
    "waiting",
    "lyrics-open",
    "lyrics-voting",
    "generation",
    "song-voting",
    "active",
    "paused",
    "completed",
    "cancelled",
)

TERMINAL_STATUSES = frozenset({"completed", "cancelled"})

VISIBILITIES = ("public", "unlisted", "private")

PARTICIPANT_ROLES = ("participant", "moderator", "host")

VOTING_SYSTEMS = ("simple", "weighted", "tokenized")

# Settings stored in the JSON column; deadlines live in their own columns.
DEFAULT_SETTINGS = {
    "allow_anonymous": False,
    "min_reputation_to_submit": 0,
    "voting_system": "simple",
    "max_lyrics_per_user": 1,
    "max_songs_per_user": 3,
    "show_vote_counts_during_voting": False,
    "require_approval": False,
    "allow_song_requests": True,
    "voting_enabled": True,
}


def _uuid() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session(db.Model):
    """A crowd music session: pipeline status, schedule, settings and stats."""

    __tablename__ = "sessions"

    id = db.Column(db.String(32), primary_key=True, default=_uuid)
    session_code = db.Column(
        db.String(6),
        nullable=False,
        unique=True,
        index=True,
        comment="6 upper-case hex chars, shared verbally / on stream",
    )

    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    genre = db.Column(db.String(40), nullable=True, index=True)
    mood = db.Column(db.String(40), nullable=True)
    theme = db.Column(db.String(200), nullable=True)
    guidelines = db.Column(db.Text, nullable=True)
    target_bpm = db.Column(db.Integer, nullable=True)
    tags = db.Column(db.JSON, nullable=False, default=list)

    host_id = db.Column(
        db.String(64),
        nullable=False,
        index=True,
        comment="Opaque user id issued by the identity service",
    )

    # Pipeline position
    status = db.Column(
        db.String(20),
        nullable=False,
        default="draft",
        comment="draft | waiting | lyrics-open | lyrics-voting | generation | song-voting | active | paused | completed | cancelled",
    )
    stage = db.Column(db.Integer, nullable=False, default=1, comment="1–6, derived from status")
    previous_status = db.Column(
        db.String(20),
        nullable=True,
        comment="Status to restore on resume; set only while paused",
    )

    visibility = db.Column(db.String(20), nullable=False, default="public")
    max_participants = db.Column(db.Integer, nullable=True, comment="NULL = unlimited")
    settings = db.Column(db.JSON, nullable=False, default=dict)

    # Deadlines (pull-based: checked at request time)
    lyrics_deadline = db.Column(db.DateTime(timezone=True), nullable=True)
    voting_deadline = db.Column(db.DateTime(timezone=True), nullable=True)

    # Schedule stamps
    scheduled_start = db.Column(db.DateTime(timezone=True), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    lyrics_open_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voting_start_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Aggregate stats (atomic increments only)
    total_participants = db.Column(db.Integer, nullable=False, default=0)
    total_submissions = db.Column(db.Integer, nullable=False, default=0)
    total_votes = db.Column(db.Integer, nullable=False, default=0)
    peak_concurrent_users = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    participants = db.relationship(
        "SessionParticipant",
        back_populates="session",
        order_by="SessionParticipant.id",
        cascade="all, delete-orphan",
    )
    songs = db.relationship(
        "SessionSong",
        back_populates="session",
        order_by="SessionSong.position",
        cascade="all, delete-orphan",
    )
    feedback = db.relationship(
        "SessionFeedback",
        back_populates="session",
        order_by="SessionFeedback.id",
        cascade="all, delete-orphan",
    )
    bans = db.relationship(
        "SessionBan",
        back_populates="session",
        order_by="SessionBan.id",
        cascade="all, delete-orphan",
    )
    mutes = db.relationship(
        "SessionMute",
        back_populates="session",
        order_by="SessionMute.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.CheckConstraint("stage BETWEEN 1 AND 6", name="ck_session_stage_range"),
        db.Index("ix_session_status_visibility", "status", "visibility"),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    def setting(self, key):
        """Return a settings value, falling back to DEFAULT_SETTINGS."""
        return (self.settings or {}).get(key, DEFAULT_SETTINGS.get(key))

    def effective_settings(self) -> dict:
        return {**DEFAULT_SETTINGS, **(self.settings or {})}

    def participant_for(self, user_id):
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def active_participant_count(self) -> int:
        return sum(1 for p in self.participants if p.is_active)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_children=False) -> dict:
        data = {
            "id": self.id,
            "session_code": self.session_code,
            "title": self.title,
            "description": self.description,
            "genre": self.genre,
            "mood": self.mood,
            "theme": self.theme,
            "guidelines": self.guidelines,
            "target_bpm": self.target_bpm,
            "tags": self.tags or [],
            "host_id": self.host_id,
            "status": self.status,
            "stage": self.stage,
            "previous_status": self.previous_status,
            "visibility": self.visibility,
            "max_participants": self.max_participants,
            "settings": {
                **self.effective_settings(),
                "lyrics_deadline": isoformat(self.lyrics_deadline),
                "voting_deadline": isoformat(self.voting_deadline),
            },
            "schedule": {
                "scheduled_start": isoformat(self.scheduled_start),
                "started_at": isoformat(self.started_at),
                "lyrics_open_at": isoformat(self.lyrics_open_at),
                "voting_start_at": isoformat(self.voting_start_at),
                "completed_at": isoformat(self.completed_at),
                "ended_at": isoformat(self.ended_at),
            },
            "stats": {
                "total_participants": self.total_participants,
                "active_participants": self.active_participant_count(),
                "total_submissions": self.total_submissions,
                "total_votes": self.total_votes,
                "peak_concurrent_users": self.peak_concurrent_users,
            },
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if include_children:
            data["participants"] = [p.to_dict() for p in self.participants]
            data["songs"] = [s.to_dict() for s in self.songs]
        return data

    def __repr__(self):
        return f"<Session {self.session_code} status={self.status} stage={self.stage}>"


class SessionParticipant(db.Model):
    """Membership of one user in one session. Soft-removed, never deleted."""

    __tablename__ = "session_participants"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.String(32),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(64), nullable=False)
    role = db.Column(
        db.String(20),
        nullable=False,
        default="participant",
        comment="participant | moderator | host",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    joined_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    left_at = db.Column(db.DateTime(timezone=True), nullable=True)
    kicked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    kicked_by = db.Column(db.String(64), nullable=True)
    kick_reason = db.Column(db.String(500), nullable=True)

    votes_cast = db.Column(db.Integer, nullable=False, default=0)
    submissions_made = db.Column(db.Integer, nullable=False, default=0)

    session = db.relationship("Session", back_populates="participants")

    __table_args__ = (
        db.UniqueConstraint("session_id", "user_id", name="uq_participant_session_user"),
        db.Index("ix_participant_session_active", "session_id", "is_active"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "role": self.role,
            "is_active": self.is_active,
            "joined_at": isoformat(self.joined_at),
            "left_at": isoformat(self.left_at),
            "kicked_at": isoformat(self.kicked_at),
            "kicked_by": self.kicked_by,
            "kick_reason": self.kick_reason,
            "votes_cast": self.votes_cast,
            "submissions_made": self.submissions_made,
        }

    def __repr__(self):
        return f"<SessionParticipant {self.user_id} role={self.role} active={self.is_active}>"


class SessionBan(db.Model):
    """Ban of one user from one session. ``expires_at`` NULL = permanent."""

    __tablename__ = "session_bans"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.String(32),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(64), nullable=False)
    banned_by = db.Column(db.String(64), nullable=False)
    reason = db.Column(db.String(500), nullable=True)
    banned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    session = db.relationship("Session", back_populates="bans")

    __table_args__ = (
        db.UniqueConstraint("session_id", "user_id", name="uq_ban_session_user"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "banned_by": self.banned_by,
            "reason": self.reason,
            "banned_at": isoformat(self.banned_at),
            "expires_at": isoformat(self.expires_at),
        }


class SessionMute(db.Model):
    """Mute of one user in one session. ``expires_at`` NULL = permanent."""

    __tablename__ = "session_mutes"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.String(32),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(64), nullable=False)
    muted_by = db.Column(db.String(64), nullable=False)
    reason = db.Column(db.String(500), nullable=True)
    muted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    session = db.relationship("Session", back_populates="mutes")

    __table_args__ = (
        db.UniqueConstraint("session_id", "user_id", name="uq_mute_session_user"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "muted_by": self.muted_by,
            "reason": self.reason,
            "muted_at": isoformat(self.muted_at),
            "expires_at": isoformat(self.expires_at),
        }


class SessionSong(db.Model):
    """A track queued in the session, with running vote counters."""

    __tablename__ = "session_songs"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.String(32),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    artist = db.Column(db.String(200), nullable=True)
    url = db.Column(db.String(500), nullable=True, comment="Reference into external audio storage")
    duration_seconds = db.Column(db.Integer, nullable=True)
    added_by = db.Column(db.String(64), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    votes = db.Column(db.Integer, nullable=False, default=0)
    weighted_votes = db.Column(db.Float, nullable=False, default=0.0)
    added_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    session = db.relationship("Session", back_populates="songs")
    voters = db.relationship(
        "SessionSongVote",
        back_populates="song",
        order_by="SessionSongVote.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.CheckConstraint("votes >= 0", name="ck_song_votes_nonneg"),
    )

    def has_voted(self, user_id) -> bool:
        return any(v.user_id == user_id for v in self.voters)

    def to_dict(self, viewer_id=None) -> dict:
        data = {
            "id": self.id,
            "session_id": self.session_id,
            "title": self.title,
            "artist": self.artist,
            "url": self.url,
            "duration_seconds": self.duration_seconds,
            "added_by": self.added_by,
            "position": self.position,
            "votes": self.votes,
            "weighted_votes": round(self.weighted_votes or 0.0, 2),
            "added_at": isoformat(self.added_at),
        }
        if viewer_id:
            data["has_voted"] = self.has_voted(viewer_id)
        return data


class SessionSongVote(db.Model):
    """One user's vote on one queued song; ``weight`` is frozen at vote time."""

    __tablename__ = "session_song_votes"

    id = db.Column(db.Integer, primary_key=True)
    song_id = db.Column(
        db.Integer,
        db.ForeignKey("session_songs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(64), nullable=False)
    weight = db.Column(db.Float, nullable=False, default=1.0)
    voted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    song = db.relationship("SessionSong", back_populates="voters")

    __table_args__ = (
        db.UniqueConstraint("song_id", "user_id", name="uq_song_vote_user"),
    )


class SessionFeedback(db.Model):
    """Post-session rating; one row per (session, user), overwritten on resubmit."""

    __tablename__ = "session_feedback"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.String(32),
        db.ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(64), nullable=False)
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    session = db.relationship("Session", back_populates="feedback")

    __table_args__ = (
        db.UniqueConstraint("session_id", "user_id", name="uq_feedback_session_user"),
        db.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_feedback_rating_range"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "rating": self.rating,
            "comment": self.comment,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
