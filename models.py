from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(db.Model):
    __tablename__ = "users"

    id          = db.Column(db.Integer, primary_key=True)
    username    = db.Column(db.String(50), unique=True, nullable=False)
    email       = db.Column(db.String(255), unique=True, nullable=False)   # stored lowercased
    pw_hash     = db.Column(db.String(255), nullable=False)                # login password hash
    created_at  = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_login  = db.Column(db.DateTime)
    updated_at  = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {"id": self.id, "username": self.username, "email": self.email}


class VaultEntry(db.Model):
    __tablename__ = "vault_entries"
    __table_args__ = (
        db.Index("ix_vault_entries_user_category", "user_id", "category"),
    )

    id          = db.Column(db.Integer, primary_key=True)
    user_id     = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    title       = db.Column(db.String(255), nullable=False)
    username    = db.Column(db.String(255), nullable=False, default="")
    password_ct = db.Column(db.Text, nullable=False)                      # encrypted secret
    url         = db.Column(db.String(500), nullable=False, default="")
    notes_ct    = db.Column(db.Text, nullable=False, default="")           # encrypted notes, "" when empty
    category    = db.Column(db.String(50), nullable=False, default="general")
    created_at  = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at  = db.Column(db.DateTime, default=utcnow, nullable=False)
