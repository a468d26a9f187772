from storefront.core.config import settings
from storefront.core.database import get_db, Base, get_db_session
