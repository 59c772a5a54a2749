"""
Executed-file link redemption ledger.

Executed-file tokens are stateless JWTs; this table is the only state
behind them and exists solely to bound how many times one token may be
redeemed.  One row per token ``jti``.
"""

from esign.models import db
from esign.models._helpers import _iso, _utcnow, _uuid


class ExecutedLinkRedemption(db.Model):
    __tablename__ = "executed_link_redemptions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    jti = db.Column(db.String(64), nullable=False, unique=True)
    file_id = db.Column(db.String(36), nullable=False)
    envelope_id = db.Column(db.String(36), nullable=True, index=True)
    use_count = db.Column(db.Integer, nullable=False, default=0)
    max_uses = db.Column(db.Integer, nullable=False, default=1)
    first_redeemed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_redeemed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def remaining_uses(self) -> int:
        return max(self.max_uses - self.use_count, 0)

    def to_dict(self) -> dict:
        return {
            "jti": self.jti,
            "file_id": self.file_id,
            "envelope_id": self.envelope_id,
            "use_count": self.use_count,
            "max_uses": self.max_uses,
            "remaining_uses": self.remaining_uses,
            "first_redeemed_at": _iso(self.first_redeemed_at),
            "last_redeemed_at": _iso(self.last_redeemed_at),
        }
