import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# JWT Config
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))  # 7 days
AUTH_COOKIE_NAME = os.getenv("AUTH_COOKIE_NAME", "adminToken")

# Pricing
SHIPPING_PRICE = float(os.getenv("SHIPPING_PRICE", "10"))
TAX_RATE = float(os.getenv("TAX_RATE", "0.15"))

# Inventory
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "5"))
MAX_CART_ITEM_QUANTITY = int(os.getenv("MAX_CART_ITEM_QUANTITY", "99"))

# Rate limiting
LOGIN_RATE_LIMIT = int(os.getenv("LOGIN_RATE_LIMIT", "5"))
LOGIN_RATE_WINDOW_SECONDS = int(os.getenv("LOGIN_RATE_WINDOW_SECONDS", str(15 * 60)))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
