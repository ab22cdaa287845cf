# app.py - marketplace API: payment verification, likes, mint queue, boosts
import os
import re
from datetime import datetime
from functools import wraps

import jwt
from flask import Flask, jsonify, make_response, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from supabase import Client, create_client

import config
from boosts import BoostService
from errors import ApiError
from likes import LikeService
from mint_queue import MintQueue
from payments import PaymentVerifier
from repositories import (BoostRepository, CollectionRepository, MintJobRepository, NFTRepository,
                          PaymentRepository, SecurityEventRepository, collection_likes, nft_likes)
from security_events import SEVERITIES, SecurityEventLogger
from solana_rpc import SolanaRpcClient

app = Flask(__name__)
FRONTEND_URL = config.FRONTEND_URL

# Build allowlist for origins including localhost and Vercel previews
ALLOWED_ORIGIN_STRINGS = [
    FRONTEND_URL,
    'http://localhost:3000',
    'http://127.0.0.1:3000',
    'http://localhost:5173',
]
ALLOWED_ORIGIN_REGEX_STRINGS = [
    r'^https://.*\.vercel\.app$',
]

# Support comma-separated extra origins via env var (e.g., custom domains)
if config.ADDITIONAL_ALLOWED_ORIGINS:
    for origin in [o.strip() for o in config.ADDITIONAL_ALLOWED_ORIGINS.split(',') if o.strip()]:
        ALLOWED_ORIGIN_STRINGS.append(origin)

ALLOWED_ORIGINS_FOR_FLASK_CORS = ALLOWED_ORIGIN_STRINGS + ALLOWED_ORIGIN_REGEX_STRINGS
ALLOWED_ORIGIN_REGEXES = [re.compile(p) for p in ALLOWED_ORIGIN_REGEX_STRINGS]

# Allow-all mode for development
CORS_ALLOW_ALL = config.CORS_ALLOW_ALL
if not CORS_ALLOW_ALL:
    # If explicitly production, keep strict; otherwise default to allow-all in dev
    env = (os.getenv('ENV') or os.getenv('FLASK_ENV') or '').lower()
    if env and env != 'production':
        CORS_ALLOW_ALL = True

ALLOWED_HEADERS = ["Content-Type", "Authorization", "X-Client-Info", "apikey", "X-Service-Key"]
ALLOWED_METHODS = ["GET", "POST", "OPTIONS"]

CORS(
    app,
    resources={
        r"/api/*": {
            "origins": "*" if CORS_ALLOW_ALL else ALLOWED_ORIGINS_FOR_FLASK_CORS,
            "allow_headers": ALLOWED_HEADERS,
            "methods": ALLOWED_METHODS,
            "max_age": 86400  # 24 hours
        }
    },
    supports_credentials=not CORS_ALLOW_ALL,
)


@app.before_request
def _log_request():
    if request.path.startswith("/api/"):
        app.logger.debug("%s %s auth=%s", request.method, request.path,
                         bool(request.headers.get("Authorization")))


@app.route('/health', methods=['GET'])
@app.route('/api/health', methods=['GET'])
def health_check():
    return jsonify({
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "cors_allow_all": CORS_ALLOW_ALL,
        "environment": os.getenv('ENV', 'not-set'),
        "version": "1.0.0"
    }), 200


def _is_origin_allowed(origin: str) -> bool:
    if not origin:
        return False
    if CORS_ALLOW_ALL:
        return True
    if origin in ALLOWED_ORIGIN_STRINGS:
        return True
    for rx in ALLOWED_ORIGIN_REGEXES:
        if rx.match(origin):
            return True
    return False


# Fallback preflight handler for any /api/* route
@app.route('/api/<path:unused>', methods=['OPTIONS'])
def cors_preflight(unused):
    resp = make_response('', 204)
    request_origin = request.headers.get('Origin', '')
    if request_origin:
        if _is_origin_allowed(request_origin):
            resp.headers['Access-Control-Allow-Origin'] = request_origin
    else:
        resp.headers['Access-Control-Allow-Origin'] = '*'
    resp.headers['Vary'] = 'Origin'

    requested_headers = request.headers.get('Access-Control-Request-Headers')
    resp.headers['Access-Control-Allow-Headers'] = requested_headers or ', '.join(ALLOWED_HEADERS)
    resp.headers['Access-Control-Allow-Methods'] = ','.join(ALLOWED_METHODS)
    if not CORS_ALLOW_ALL:
        resp.headers['Access-Control-Allow-Credentials'] = 'true'
    resp.headers['Access-Control-Max-Age'] = '600'
    return resp


# Rate limiting keyed on the authenticated user when there is one
limiter = Limiter(
    app=app,
    key_func=lambda: getattr(request, 'user_id', None) or get_remote_address(),
    default_limits=[],
    storage_uri=config.RATELIMIT_STORAGE_URI,
)
limiter.exempt(cors_preflight)

# Initialize Supabase client (service role key expected)
supabase: Client = None
if config.SUPABASE_URL and config.SUPABASE_SERVICE_KEY:
    supabase = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_KEY)
else:
    app.logger.warning("SUPABASE_URL / SUPABASE_SERVICE_KEY not set; database calls will fail")

solana_client = SolanaRpcClient(
    config.SOLANA_RPC_URL,
    timeout=config.SOLANA_RPC_TIMEOUT_SECONDS,
    max_retries=config.SOLANA_RPC_MAX_RETRIES,
)


# --------------------- Service wiring (per request, stateless) ---------------------
def _security() -> SecurityEventLogger:
    return SecurityEventLogger(SecurityEventRepository(supabase))


def _payment_verifier() -> PaymentVerifier:
    return PaymentVerifier(
        payments=PaymentRepository(supabase),
        collections=CollectionRepository(supabase),
        rpc=solana_client,
        security=_security(),
    )


def _like_service(kind: str) -> LikeService:
    if kind == 'collection':
        return LikeService(kind, collection_likes(supabase), CollectionRepository(supabase))
    return LikeService(kind, nft_likes(supabase))


def _mint_queue() -> MintQueue:
    return MintQueue(MintJobRepository(supabase), CollectionRepository(supabase))


def _boost_service() -> BoostService:
    return BoostService(BoostRepository(supabase), NFTRepository(supabase), PaymentRepository(supabase))


def _client_ip() -> str:
    forwarded = request.headers.get('X-Forwarded-For', '')
    return forwarded.split(',')[0].strip() if forwarded else request.remote_addr


# --------------------- Error handlers ---------------------
@app.errorhandler(ApiError)
def handle_api_error(e: ApiError):
    if e.status_code >= 500:
        app.logger.error("%s %s -> %s: %s", request.method, request.path, e.status_code, e.message)
    return jsonify(e.to_dict()), e.status_code


@app.errorhandler(429)
def handle_rate_limit(e):
    user_id = getattr(request, 'user_id', None)
    if request.endpoint == 'verify_payment':
        _security().log('payment_rate_limit_exceeded', 'high', user_id=user_id,
                        metadata={'path': request.path, 'limit': str(getattr(e, 'description', ''))},
                        ip_address=_client_ip())
    app.logger.warning("Rate limit exceeded on %s for %s", request.path, user_id or _client_ip())
    return jsonify({'error': 'Rate limit exceeded. Please wait before trying again.'}), 429


@app.errorhandler(404)
def handle_not_found(e):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(405)
def handle_method_not_allowed(e):
    return jsonify({'error': 'Method not allowed'}), 405


# --------------------- Auth Decorator ---------------------
def _decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        os.getenv('SUPABASE_JWT_SECRET'),
        algorithms=['HS256'],
        audience='authenticated',
        options={"verify_exp": True}
    )


def require_auth(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get('Authorization')
        if not auth_header:
            return jsonify({
                'error': 'Authentication required',
                'details': 'No Authorization header was received',
            }), 401

        parts = auth_header.split(' ')
        if len(parts) != 2 or parts[0] != 'Bearer' or not parts[1]:
            return jsonify({
                'error': 'Invalid token format',
                'details': 'Authorization header must be in format: Bearer <token>',
            }), 401
        token = parts[1]

        if not os.getenv('SUPABASE_JWT_SECRET'):
            app.logger.error("SUPABASE_JWT_SECRET not set")
            return jsonify({
                'error': 'Server configuration error',
                'details': 'JWT secret not configured',
            }), 500

        try:
            payload = _decode_token(token)
            request.user_id = payload['sub']
            request.user_role = payload.get('role', 'user')
        except jwt.ExpiredSignatureError:
            return jsonify({'error': 'Token expired', 'details': 'JWT token has expired'}), 401
        except jwt.InvalidTokenError as e:
            app.logger.info(f"Invalid token: {e}")
            return jsonify({'error': 'Invalid authentication', 'details': str(e)}), 401
        except KeyError:
            return jsonify({'error': 'Invalid authentication', 'details': 'Token has no subject'}), 401

        return f(*args, **kwargs)
    return decorated_function


# --------------------- Service Key Auth Decorator ---------------------
def require_service_key(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        service_key = request.headers.get('X-Service-Key')
        expected = os.getenv('ADMIN_SERVICE_KEY') or config.ADMIN_SERVICE_KEY
        if not service_key or not expected or service_key != expected:
            return jsonify({'error': 'Invalid service key'}), 403
        return f(*args, **kwargs)
    return decorated_function


# --------------------- Payments ---------------------
@app.route('/api/payments/verify', methods=['POST'])
@require_auth
@limiter.limit(config.VERIFY_PAYMENT_RATE_LIMIT)
def verify_payment():
    """Verify a Solana payment on-chain and record it once."""
    body = request.get_json(silent=True) or {}
    try:
        result = _payment_verifier().verify(body, request.user_id, _client_ip())
        return jsonify(result), 200
    except ApiError:
        raise
    except Exception:
        app.logger.exception("verify_payment error")
        return jsonify({'error': 'Internal server error'}), 500


@app.route('/api/mint-fee', methods=['GET'])
def get_mint_fee():
    total = round(config.COLLECTION_CREATION_FEE + config.TRANSACTION_FEE, 9)
    return jsonify({
        'success': True,
        'feeEstimate': {
            'collectionCreationFee': config.COLLECTION_CREATION_FEE,
            'transactionFee': config.TRANSACTION_FEE,
            'totalFee': total,
            'currency': 'SOL',
            'breakdown': [
                {'description': 'Collection NFT Creation', 'amount': config.COLLECTION_CREATION_FEE, 'currency': 'SOL'},
                {'description': 'Network Transaction Fee', 'amount': config.TRANSACTION_FEE, 'currency': 'SOL'},
            ],
        },
    }), 200


# --------------------- Likes ---------------------
@app.route('/api/likes/<any(nft, collection):kind>', methods=['POST'])
@require_auth
@limiter.limit("120 per minute")
def toggle_like(kind):
    body = request.get_json(silent=True) or {}
    try:
        return jsonify(_like_service(kind).apply(request.user_id, body)), 200
    except ApiError as e:
        return jsonify({'success': False, 'code': e.code, 'message': e.message, 'error': e.message}), e.status_code
    except Exception:
        app.logger.exception("toggle_like error")
        return jsonify({'success': False, 'code': 'INTERNAL_ERROR', 'message': 'Failed to update like status',
                        'error': 'Internal server error'}), 500


@app.route('/api/likes/<any(nft, collection):kind>', methods=['GET'])
@require_auth
def list_likes(kind):
    try:
        return jsonify({'liked': _like_service(kind).liked(request.user_id)}), 200
    except Exception:
        app.logger.exception("list_likes error")
        return jsonify({'error': 'Internal server error'}), 500


# --------------------- Mint queue ---------------------
@app.route('/api/mint-jobs', methods=['POST'])
@require_auth
@limiter.limit("20 per minute")
def create_mint_job():
    body = request.get_json(silent=True) or {}
    try:
        return jsonify(_mint_queue().create_job(request.user_id, body)), 200
    except ApiError:
        raise
    except Exception:
        app.logger.exception("create_mint_job error")
        return jsonify({'error': 'Failed to create mint job'}), 500


@app.route('/api/mint-jobs', methods=['GET'])
@require_auth
def list_mint_jobs():
    try:
        return jsonify({'jobs': _mint_queue().list_progress(request.user_id)}), 200
    except Exception:
        app.logger.exception("list_mint_jobs error")
        return jsonify({'error': 'Failed to load mint jobs'}), 500


@app.route('/api/mint-jobs/<job_id>', methods=['GET'])
@require_auth
def get_mint_job(job_id):
    try:
        return jsonify(_mint_queue().get_progress(request.user_id, job_id)), 200
    except ApiError:
        raise
    except Exception:
        app.logger.exception("get_mint_job error")
        return jsonify({'error': 'Failed to load mint job'}), 500


@app.route('/api/mint-jobs/<job_id>/items/<item_id>', methods=['POST'])
@require_service_key
def update_mint_job_item(job_id, item_id):
    """Worker callback: report the outcome of one mint job item."""
    body = request.get_json(silent=True) or {}
    try:
        return jsonify(_mint_queue().record_item_result(job_id, item_id, body)), 200
    except ApiError:
        raise
    except Exception:
        app.logger.exception("update_mint_job_item error")
        return jsonify({'error': 'Failed to update mint job item'}), 500


# --------------------- Boosts ---------------------
@app.route('/api/boosts', methods=['POST'])
@require_auth
@limiter.limit("10 per minute")
def create_boost():
    body = request.get_json(silent=True) or {}
    try:
        return jsonify(_boost_service().create(request.user_id, body)), 201
    except ApiError:
        raise
    except Exception:
        app.logger.exception("create_boost error")
        return jsonify({'success': False, 'error': 'Unexpected error'}), 500


# --------------------- Security events ---------------------
@app.route('/api/security/events', methods=['POST'])
@require_auth
@limiter.limit(config.SECURITY_EVENT_RATE_LIMIT)
def report_security_event():
    """Let clients report suspicious activity with a severity level."""
    body = request.get_json(silent=True) or {}
    event_type = body.get('event_type')
    severity = body.get('severity')
    if not event_type or not severity:
        return jsonify({'error': 'Missing required fields: event_type, severity'}), 400
    if severity not in SEVERITIES:
        return jsonify({'error': 'Invalid severity level. Must be: low, medium, high, or critical'}), 400
    if body.get('user_id') and body['user_id'] != request.user_id:
        return jsonify({'error': 'User ID mismatch with authenticated user'}), 403

    metadata = body.get('metadata') if isinstance(body.get('metadata'), dict) else {}
    stored = _security().log(
        event_type, severity,
        user_id=request.user_id,
        wallet_address=body.get('wallet_address'),
        metadata={**metadata, 'authenticated_user': request.user_id},
        ip_address=_client_ip(),
    )
    if not stored:
        return jsonify({'error': 'Failed to log security event'}), 500
    return jsonify({'success': True}), 200


if __name__ == '__main__':
    # Sanity checks
    missing = [k for k in config.CRITICAL_ENV_VARS if not os.getenv(k)]
    if missing:
        app.logger.error("CRITICAL: Missing required env vars: %s", missing)
        print(f"ERROR: Missing critical environment variables: {missing}")
        print("Please set these before starting the server.")
        exit(1)

    warnings = []
    if not config.PLATFORM_WALLET_ADDRESS:
        warnings.append("PLATFORM_WALLET_ADDRESS (boost payments disabled)")
    if not config.ADMIN_SERVICE_KEY:
        warnings.append("ADMIN_SERVICE_KEY (mint worker callbacks disabled)")
    if warnings:
        app.logger.warning("Missing optional env vars: %s", warnings)
        print(f"WARNING: Missing optional configuration: {warnings}")

    # Check database tables exist
    try:
        supabase.table('payments').select('id').limit(1).execute()
        print("✓ Database connection successful")
    except Exception as e:
        print(f"ERROR: Cannot connect to database: {e}")
        print("Please run the migration SQL first.")
        exit(1)

    port = int(os.getenv('PORT', 5000))
    print(f"Starting marketplace API server on port {port}")
    print(f"Frontend URL: {FRONTEND_URL}")
    print(f"Solana RPC: {config.SOLANA_RPC_URL}")

    app.run(
        debug=os.getenv('FLASK_ENV') == 'development',
        port=port,
        host='0.0.0.0'
    )
