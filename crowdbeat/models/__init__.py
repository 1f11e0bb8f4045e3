"""
CrowdBeat Session Core
SQLAlchemy models.

All models share the single ``db`` instance below; it is bound to the
Flask app inside ``create_app``.

Usage:
    from crowdbeat.models import db
    from crowdbeat.models.session import Session
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
