"""Data models for users, API tokens, traffic reports and their interactions."""
import math
import uuid
from datetime import datetime, timezone

from flask_login import UserMixin
from sqlalchemy.orm import validates
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db
from utils.errors import ValidationError
from utils.security import generate_token, hash_value


def generate_uuid() -> str:
	return str(uuid.uuid4())


def utcnow() -> datetime:
	"""Naive UTC timestamp, matching what SQLite and PostgreSQL hand back."""
	return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: datetime | None) -> str | None:
	if value is None:
		return None
	return value.isoformat(timespec="milliseconds") + "Z"


def time_ago(value: datetime | None, now: datetime | None = None) -> str | None:
	if value is None:
		return None
	now = now or utcnow()
	minutes = int((now - value).total_seconds() // 60)
	if minutes < 1:
		return "Just now"
	if minutes < 60:
		return f"{minutes} min ago"
	hours = minutes // 60
	if hours < 24:
		return f"{hours} hour{'s' if hours > 1 else ''} ago"
	days = hours // 24
	return f"{days} day{'s' if days > 1 else ''} ago"


ROLE_NAMES: tuple[str, ...] = (
	"user",
	"admin",
)

REPORT_TYPES: tuple[str, ...] = (
	"accident",
	"hazard",
	"construction",
	"traffic",
	"police",
)

REPORT_SEVERITIES: tuple[str, ...] = (
	"low",
	"medium",
	"high",
)

REPORT_STATUSES: tuple[str, ...] = (
	"active",
	"resolved",
	"expired",
	"flagged",
)

REPORTED_VIA: tuple[str, ...] = (
	"mobile",
	"web",
)

DESCRIPTION_MIN_LENGTH = 10
DESCRIPTION_MAX_LENGTH = 500
ADDRESS_MAX_LENGTH = 200
COMMENT_MAX_LENGTH = 200
FLAG_REASON_MAX_LENGTH = 500


def _coordinate(field: str, value, limit: float) -> float:
	if isinstance(value, bool):
		raise ValidationError.for_field(field, f"{field.capitalize()} must be a number")
	try:
		number = float(value)
	except (TypeError, ValueError):
		raise ValidationError.for_field(field, f"{field.capitalize()} must be a number") from None
	if not math.isfinite(number) or number < -limit or number > limit:
		raise ValidationError.for_field(field, f"{field.capitalize()} must be between -{limit:g} and {limit:g}")
	return number


class Role(db.Model):
	__tablename__ = "roles"

	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(50), unique=True, nullable=False, index=True)
	description = db.Column(db.String(255), nullable=True)

	users = db.relationship("User", back_populates="role", lazy="dynamic")

	@staticmethod
	def get_or_create(name: str, description: str = ""):
		role = Role.query.filter_by(name=name).first()
		if role:
			return role
		role = Role(name=name, description=description)
		db.session.add(role)
		db.session.commit()
		return role


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	name = db.Column(db.String(50), nullable=False)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	password_hash = db.Column(db.String(255), nullable=False)
	role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False)
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	reports_submitted = db.Column(db.Integer, default=0, nullable=False)
	reports_verified = db.Column(db.Integer, default=0, nullable=False)
	helpful_votes = db.Column(db.Integer, default=0, nullable=False)
	created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
	last_login_at = db.Column(db.DateTime, nullable=True)

	role = db.relationship("Role", back_populates="users")
	api_tokens = db.relationship("ApiToken", back_populates="user", lazy="dynamic", cascade="all, delete-orphan")
	audit_logs = db.relationship("AuditLog", back_populates="user", lazy="dynamic")
	reports = db.relationship("Report", back_populates="author", lazy="dynamic")

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		return check_password_hash(self.password_hash, password)

	@property
	def role_name(self) -> str:
		return (self.role.name if self.role else "user").lower()

	@property
	def is_admin(self) -> bool:
		return self.role_name == "admin"

	@property
	def active(self) -> bool:  # Flask-Login compatibility alias
		return self.is_active

	def issue_api_token(self, ttl) -> str:
		"""Create a bearer token for this user; only its hash is stored."""
		raw_token = generate_token()
		db.session.add(
			ApiToken(
				user=self,
				token_hash=hash_value(raw_token),
				expires_at=utcnow() + ttl,
			)
		)
		return raw_token

	def summary_payload(self) -> dict:
		return {"id": str(self.id), "name": self.name}

	def profile_payload(self) -> dict:
		return {
			"id": str(self.id),
			"name": self.name,
			"email": self.email,
			"role": self.role_name,
			"stats": {
				"reportsSubmitted": self.reports_submitted,
				"reportsVerified": self.reports_verified,
				"helpfulVotes": self.helpful_votes,
			},
			"createdAt": isoformat(self.created_at),
		}


class ApiToken(db.Model):
	__tablename__ = "api_tokens"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	token_hash = db.Column(db.String(128), nullable=False, unique=True, index=True)
	expires_at = db.Column(db.DateTime, nullable=False)
	revoked_at = db.Column(db.DateTime, nullable=True)
	created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

	user = db.relationship("User", back_populates="api_tokens")

	@property
	def is_expired(self) -> bool:
		return utcnow() > self.expires_at

	@property
	def is_revoked(self) -> bool:
		return self.revoked_at is not None

	@staticmethod
	def resolve(raw_token: str):
		"""Return the live token row for a raw bearer value, or None."""
		if not raw_token:
			return None
		token = ApiToken.query.filter_by(token_hash=hash_value(raw_token)).first()
		if not token or token.is_expired or token.is_revoked:
			return None
		return token


class AuditLog(db.Model):
	__tablename__ = "audit_logs"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	action_type = db.Column(db.String(50), nullable=False)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	context_entity = db.Column(db.String(120), nullable=True)
	timestamp = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

	user = db.relationship("User", back_populates="audit_logs")


class Report(db.Model):
	__tablename__ = "reports"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	author_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	report_type = db.Column("type", db.String(20), nullable=False, index=True)
	severity = db.Column(db.String(10), nullable=False, default="medium", index=True)
	description = db.Column(db.String(DESCRIPTION_MAX_LENGTH), nullable=False)
	latitude = db.Column(db.Float, nullable=False)
	longitude = db.Column(db.Float, nullable=False)
	address = db.Column(db.String(ADDRESS_MAX_LENGTH), nullable=True)
	status = db.Column(db.String(20), nullable=False, default="active", index=True)
	is_verified = db.Column(db.Boolean, nullable=False, default=False, index=True)
	verification_count = db.Column(db.Integer, nullable=False, default=0, index=True)
	views = db.Column(db.Integer, nullable=False, default=0)
	helpful_count = db.Column(db.Integer, nullable=False, default=0)
	extra_metadata = db.Column("metadata", db.JSON, nullable=True)
	expires_at = db.Column(db.DateTime, nullable=False, index=True)
	created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
	updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

	__table_args__ = (
		db.CheckConstraint(
			"type IN ('accident','hazard','construction','traffic','police')",
			name="ck_report_type_valid",
		),
		db.CheckConstraint("severity IN ('low','medium','high')", name="ck_report_severity_valid"),
		db.CheckConstraint(
			"status IN ('active','resolved','expired','flagged')",
			name="ck_report_status_valid",
		),
		db.CheckConstraint("latitude >= -90 AND latitude <= 90", name="ck_report_latitude_range"),
		db.CheckConstraint("longitude >= -180 AND longitude <= 180", name="ck_report_longitude_range"),
		db.Index("ix_reports_lat_lng", "latitude", "longitude"),
		db.Index("ix_reports_type_status", "type", "status"),
		db.Index("ix_reports_status_expires", "status", "expires_at"),
		db.Index("ix_reports_author_created", "author_id", "created_at"),
	)

	author = db.relationship("User", back_populates="reports")
	images = db.relationship(
		"ReportImage",
		back_populates="report",
		order_by="ReportImage.position",
		cascade="all, delete-orphan",
	)
	verifications = db.relationship(
		"ReportVerification",
		back_populates="report",
		order_by="ReportVerification.verified_at",
		cascade="all, delete-orphan",
	)
	helpful_voters = db.relationship(
		"HelpfulVote",
		back_populates="report",
		order_by="HelpfulVote.voted_at",
		cascade="all, delete-orphan",
	)
	comments = db.relationship(
		"ReportComment",
		back_populates="report",
		order_by="ReportComment.created_at",
		cascade="all, delete-orphan",
	)
	status_history = db.relationship(
		"ReportStatusHistory",
		back_populates="report",
		order_by="ReportStatusHistory.changed_at",
		cascade="all, delete-orphan",
	)
	flags = db.relationship("ReportFlag", back_populates="report", cascade="all, delete-orphan")

	@validates("report_type")
	def _validate_type(self, _key, value):
		if value not in REPORT_TYPES:
			raise ValidationError.for_field(
				"type", "Report type must be one of: " + ", ".join(REPORT_TYPES)
			)
		return value

	@validates("severity")
	def _validate_severity(self, _key, value):
		if value is None:
			return "medium"
		if value not in REPORT_SEVERITIES:
			raise ValidationError.for_field(
				"severity", "Severity must be one of: " + ", ".join(REPORT_SEVERITIES)
			)
		return value

	@validates("status")
	def _validate_status(self, _key, value):
		if value not in REPORT_STATUSES:
			raise ValidationError.for_field(
				"status", "Status must be one of: " + ", ".join(REPORT_STATUSES)
			)
		return value

	@validates("description")
	def _validate_description(self, _key, value):
		if not isinstance(value, str) or not value.strip():
			raise ValidationError.for_field("description", "Description is required")
		value = value.strip()
		if len(value) < DESCRIPTION_MIN_LENGTH:
			raise ValidationError.for_field(
				"description", f"Description must be at least {DESCRIPTION_MIN_LENGTH} characters long"
			)
		if len(value) > DESCRIPTION_MAX_LENGTH:
			raise ValidationError.for_field(
				"description", f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters"
			)
		return value

	@validates("latitude")
	def _validate_latitude(self, _key, value):
		return _coordinate("latitude", value, 90)

	@validates("longitude")
	def _validate_longitude(self, _key, value):
		return _coordinate("longitude", value, 180)

	@validates("address")
	def _validate_address(self, _key, value):
		if value is None:
			return None
		value = str(value).strip()
		if len(value) > ADDRESS_MAX_LENGTH:
			raise ValidationError.for_field("address", f"Address cannot exceed {ADDRESS_MAX_LENGTH} characters")
		return value or None

	def is_active_at(self, now: datetime | None = None) -> bool:
		now = now or utcnow()
		return self.status == "active" and self.expires_at is not None and self.expires_at > now

	@property
	def is_active(self) -> bool:
		return self.is_active_at()

	def to_payload(self, now: datetime | None = None, include_comments: bool = False) -> dict:
		now = now or utcnow()
		payload = {
			"id": str(self.id),
			"user": self.author.summary_payload() if self.author else None,
			"type": self.report_type,
			"severity": self.severity,
			"description": self.description,
			"location": {
				"type": "Point",
				"coordinates": [self.longitude, self.latitude],
				"address": self.address,
			},
			"latitude": self.latitude,
			"longitude": self.longitude,
			"images": [image.to_payload() for image in self.images],
			"status": self.status,
			"verification": {
				"isVerified": bool(self.is_verified),
				"verificationCount": self.verification_count,
				"verifiedBy": [
					{"user": str(v.user_id), "verifiedAt": isoformat(v.verified_at)} for v in self.verifications
				],
			},
			"interactions": {
				"views": self.views,
				"helpfulCount": self.helpful_count,
				"helpful": [{"user": str(h.user_id), "votedAt": isoformat(h.voted_at)} for h in self.helpful_voters],
				"commentCount": len(self.comments),
			},
			"metadata": self.extra_metadata or {},
			"expiresAt": isoformat(self.expires_at),
			"createdAt": isoformat(self.created_at),
			"updatedAt": isoformat(self.updated_at),
			"timeAgo": time_ago(self.created_at, now),
			"isActive": self.is_active_at(now),
		}
		if include_comments:
			payload["interactions"]["comments"] = [comment.to_payload() for comment in self.comments]
		return payload


class ReportImage(db.Model):
	__tablename__ = "report_images"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	url = db.Column(db.String(500), nullable=False)
	external_id = db.Column(db.String(255), nullable=False, unique=True)
	position = db.Column(db.Integer, nullable=False, default=0)
	uploaded_at = db.Column(db.DateTime, default=utcnow, nullable=False)

	report = db.relationship("Report", back_populates="images")

	def to_payload(self) -> dict:
		return {
			"id": str(self.id),
			"url": self.url,
			"externalId": self.external_id,
			"uploadedAt": isoformat(self.uploaded_at),
		}


class ReportVerification(db.Model):
	__tablename__ = "report_verifications"

	id = db.Column(db.Integer, primary_key=True)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	verified_at = db.Column(db.DateTime, default=utcnow, nullable=False)

	__table_args__ = (
		db.UniqueConstraint("report_id", "user_id", name="uq_report_verifier"),
	)

	report = db.relationship("Report", back_populates="verifications")
	user = db.relationship("User")


class HelpfulVote(db.Model):
	__tablename__ = "report_helpful_votes"

	id = db.Column(db.Integer, primary_key=True)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	voted_at = db.Column(db.DateTime, default=utcnow, nullable=False)

	__table_args__ = (
		db.UniqueConstraint("report_id", "user_id", name="uq_report_helpful_voter"),
	)

	report = db.relationship("Report", back_populates="helpful_voters")
	user = db.relationship("User")


class ReportComment(db.Model):
	__tablename__ = "report_comments"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	text = db.Column(db.String(COMMENT_MAX_LENGTH), nullable=False)
	created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

	report = db.relationship("Report", back_populates="comments")
	user = db.relationship("User")

	@validates("text")
	def _validate_text(self, _key, value):
		if not isinstance(value, str) or not value.strip():
			raise ValidationError.for_field("text", "Comment text is required")
		value = value.strip()
		if len(value) > COMMENT_MAX_LENGTH:
			raise ValidationError.for_field("text", f"Comment cannot exceed {COMMENT_MAX_LENGTH} characters")
		return value

	def to_payload(self) -> dict:
		return {
			"id": str(self.id),
			"user": self.user.summary_payload() if self.user else {"id": str(self.user_id)},
			"text": self.text,
			"createdAt": isoformat(self.created_at),
		}


class ReportStatusHistory(db.Model):
	__tablename__ = "report_status_history"

	id = db.Column(db.Integer, primary_key=True)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	previous_status = db.Column(db.String(20), nullable=True)
	new_status = db.Column(db.String(20), nullable=False, index=True)
	changed_by = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	changed_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(
			"new_status IN ('active','resolved','expired','flagged')",
			name="ck_report_status_history_valid",
		),
	)

	report = db.relationship("Report", back_populates="status_history")
	actor = db.relationship("User")


class ReportFlag(db.Model):
	__tablename__ = "report_flags"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	reason = db.Column(db.String(FLAG_REASON_MAX_LENGTH), nullable=True)
	created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

	__table_args__ = (
		db.UniqueConstraint("report_id", "user_id", name="uq_report_flag_user"),
	)

	report = db.relationship("Report", back_populates="flags")
	user = db.relationship("User")

	def to_payload(self) -> dict:
		return {
			"id": str(self.id),
			"reportId": str(self.report_id),
			"user": str(self.user_id),
			"reason": self.reason,
			"createdAt": isoformat(self.created_at),
		}
