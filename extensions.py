from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_mail import Mail
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
mail = Mail()
migrate = Migrate()

# In-memory rate limiter (sufficient for single-instance deployments).
# Disable with DISABLE_RATE_LIMITING=1 (maps to RATELIMIT_ENABLED).
limiter = Limiter(get_remote_address)
