# ptrs_app/models/tenant.py

from .base import BaseModel, db


class Tenant(BaseModel):
    """Isolated customer whose data is partitioned across every pipeline table."""

    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    import_runs = db.relationship("ImportRun", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Tenant {self.slug}>"
