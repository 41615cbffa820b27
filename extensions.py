"""Flask extensions shared by the billing service (one instance each)."""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect

db = SQLAlchemy()
csrf = CSRFProtect()
limiter = Limiter(
    get_remote_address,
    storage_uri="memory://",
    headers_enabled=True,
)
