"""Account registration and bearer-token sessions."""
from flask import Blueprint, current_app
from flask_login import current_user, login_required
from flask_wtf import FlaskForm
from sqlalchemy.exc import IntegrityError
from wtforms import PasswordField, StringField
from wtforms.validators import DataRequired, Email, Length, ValidationError

from extensions import db
from models import ApiToken, Role, User, utcnow
from utils.decorators import record_audit
from utils.errors import AuthenticationError, AuthorizationError
from utils.errors import ValidationError as RequestValidationError
from utils.security import bearer_token, hash_value, password_meets_policy
from .common import form_input, success, validated

auth_bp = Blueprint("auth", __name__)


class RegistrationForm(FlaskForm):
    class Meta:
        csrf = False

    name = StringField("Name", validators=[DataRequired(message="Name is required"), Length(max=50)])
    email = StringField("Email", validators=[DataRequired(message="Email is required"), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired(message="Password is required")])

    def validate_email(self, field):
        if User.query.filter_by(email=field.data.lower().strip()).first():
            raise ValidationError("An account with this email already exists.")

    def validate_password(self, field):
        ok, reason = password_meets_policy(field.data or "")
        if not ok:
            raise ValidationError(reason)


class LoginForm(FlaskForm):
    class Meta:
        csrf = False

    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])


def _token_payload(user: User, raw_token: str) -> dict:
    return {
        "token": raw_token,
        "expiresIn": int(current_app.config["API_TOKEN_TTL"].total_seconds()),
        "user": user.profile_payload(),
    }


@auth_bp.route("/register", methods=["POST"])
def register():
    form = validated(RegistrationForm(formdata=form_input()))
    try:
        user = User(
            name=form.name.data.strip(),
            email=form.email.data.lower().strip(),
            role=Role.get_or_create("user", description="Reports and votes on traffic incidents"),
            is_active=True,
        )
        user.set_password(form.password.data)
        db.session.add(user)
        db.session.flush()
        raw_token = user.issue_api_token(current_app.config["API_TOKEN_TTL"])
        record_audit("REGISTER", user)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise RequestValidationError.for_field("email", "An account with this email already exists.") from None

    current_app.logger.info("User registered", extra={"user_id": user.id})
    return success(_token_payload(user, raw_token), "Registration successful", 201)


@auth_bp.route("/login", methods=["POST"])
def login():
    form = validated(LoginForm(formdata=form_input()))
    user = User.query.filter_by(email=form.email.data.lower().strip()).first()
    if not user or not user.check_password(form.password.data):
        record_audit("LOGIN_FAILED", user)
        db.session.commit()
        current_app.logger.warning("Failed login attempt")
        raise AuthenticationError("Invalid credentials provided")

    if not user.is_active:
        raise AuthorizationError("Your account is inactive. Please contact support.")

    user.last_login_at = utcnow()
    raw_token = user.issue_api_token(current_app.config["API_TOKEN_TTL"])
    record_audit("LOGIN", user)
    db.session.commit()
    return success(_token_payload(user, raw_token), "Login successful")


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    token = ApiToken.query.filter_by(token_hash=hash_value(bearer_token() or "")).first()
    if token and not token.is_revoked:
        token.revoked_at = utcnow()
    record_audit("LOGOUT", current_user)
    db.session.commit()
    return success(message="Logged out successfully")
