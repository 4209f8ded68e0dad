"""Flask extension singletons shared by the app factory, models and blueprints."""
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect

# Bound to the app inside create_app().
db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()

# Callers authenticate with bearer tokens on every request; there is no session cookie to guard.
login_manager = LoginManager()
login_manager.session_protection = None
