"""User model.

Credentials and sessions are handled by the auth service; billing only
needs the identity, contact details and the admin flag.
Flask-Login integration via UserMixin.
"""

import uuid

from flask_login import UserMixin

from billsync.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    full_name = db.Column(db.String(255))
    student_id = db.Column(db.String(64))
    is_admin = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    payment_profile = db.relationship(
        "PaymentProfile", back_populates="user", uselist=False
    )
    subscription = db.relationship(
        "SubscriptionRecord", back_populates="user", uselist=False
    )

    def __repr__(self):
        return f"<User {self.email}>"
