import os

from dotenv import load_dotenv

load_dotenv()


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Supabase (service role key expected)
SUPABASE_URL = os.getenv('SUPABASE_URL')
SUPABASE_SERVICE_KEY = os.getenv('SUPABASE_SERVICE_KEY')

# Worker callbacks (mint queue processor)
ADMIN_SERVICE_KEY = os.getenv('ADMIN_SERVICE_KEY')

# Solana RPC
SOLANA_RPC_URL = os.getenv('SOLANA_RPC_URL', 'https://api.mainnet-beta.solana.com')
SOLANA_RPC_TIMEOUT_SECONDS = _env_float('SOLANA_RPC_TIMEOUT_SECONDS', 10.0)
SOLANA_RPC_MAX_RETRIES = _env_int('SOLANA_RPC_MAX_RETRIES', 3)
LAMPORTS_PER_SOL = 1_000_000_000

# Payment verification
PLATFORM_WALLET_ADDRESS = os.getenv('PLATFORM_WALLET_ADDRESS', '')
PAYMENT_MAX_AGE_SECONDS = _env_int('PAYMENT_MAX_AGE_SECONDS', 300)
PAYMENT_AMOUNT_TOLERANCE = _env_float('PAYMENT_AMOUNT_TOLERANCE', 0.01)
PAYMENT_TYPES = ('mint_fee', 'boost')
VERIFY_PAYMENT_RATE_LIMIT = os.getenv('VERIFY_PAYMENT_RATE_LIMIT', '10 per minute')
SECURITY_EVENT_RATE_LIMIT = os.getenv('SECURITY_EVENT_RATE_LIMIT', '10 per minute')

# Mint queue
MINT_BATCH_SIZE = 5
MINT_MAX_QUANTITY = 1000
MINT_MINUTES_PER_BATCH = 2

# Solana network fees for collection minting (SOL)
COLLECTION_CREATION_FEE = 0.005
TRANSACTION_FEE = 0.001

# Like reconciler timings (seconds)
NFT_LIKE_DEBOUNCE_SECONDS = 0.075
COLLECTION_LIKE_DEBOUNCE_SECONDS = 0.3
LIKE_WATCHDOG_SECONDS = 4.0

# App / CORS
FRONTEND_URL = os.getenv('FRONTEND_URL', 'http://localhost:3000')
ADDITIONAL_ALLOWED_ORIGINS = os.getenv('ADDITIONAL_ALLOWED_ORIGINS', '')
CORS_ALLOW_ALL = (os.getenv('CORS_ALLOW_ALL', '') or '').lower() in ('1', 'true', 'yes')
RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')

CRITICAL_ENV_VARS = ['SUPABASE_URL', 'SUPABASE_SERVICE_KEY', 'SUPABASE_JWT_SECRET']
