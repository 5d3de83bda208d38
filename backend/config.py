"""SafePath Backend — Configuration & Constants"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root (one level up from backend/)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


# ── Storage ──
MODEL_DIR = Path(os.environ.get(
    "SAFEPATH_MODEL_DIR",
    Path(__file__).resolve().parent / "models" / "safety-model",
))
REPORTS_PATH = os.environ.get("SAFEPATH_REPORTS_PATH", "")  # JSON-lines journal, empty = memory only

# ── Prediction cache ──
CACHE_TTL_SECONDS = _env_int("SAFEPATH_CACHE_TTL", 300)       # 5 min
CACHE_MAX_SIZE = _env_int("SAFEPATH_CACHE_MAX_SIZE", 10_000)
CACHE_KEY_DECIMALS = 5

# ── Neighbourhood radii (km) ──
NEARBY_RADIUS_KM = 0.5            # prediction / training features
HOTSPOT_RADIUS_KM = 2.0           # hotspot neighbour count
ROUTE_INCIDENT_RADIUS_KM = 0.2    # incidents counted along a route

# ── Training ──
TRAINING_SAMPLE_LIMIT = _env_int("SAFEPATH_TRAINING_LIMIT", 10_000)
MIN_TRAINING_REPORTS = 10
TRAINING_EPOCHS = _env_int("SAFEPATH_TRAINING_EPOCHS", 50)
VALIDATION_SPLIT = 0.2
TRAINING_QUEUE_MAX = _env_int("SAFEPATH_TRAINING_QUEUE_MAX", 64)
RETRAIN_DELAY_SECONDS = _env_float("SAFEPATH_RETRAIN_DELAY", 1.0)

# ── Hotspots ──
HOTSPOT_SAMPLE_LIMIT = 500
HOTSPOT_MIN_NEIGHBORS = 3
HOTSPOT_TOP_N = 5
STATUS_HOTSPOT_PREVIEW = 10

# ── Route scoring ──
ROUTE_CANDIDATES = 8
ROUTE_BASE_DISTANCE_KM = 1.0
ROUTE_MIDPOINTS = 3
INFERENCE_TIMEOUT_SECONDS = _env_float("SAFEPATH_INFERENCE_TIMEOUT", 2.0)
INFERENCE_WORKERS = _env_int("SAFEPATH_INFERENCE_WORKERS", 8)
NEUTRAL_SCORE = 0.5

# ── Broadcast ──
BROADCAST_QUEUE_MAX = _env_int("SAFEPATH_BROADCAST_QUEUE_MAX", 256)
BROADCAST_DRAIN_SECONDS = 2.0

# ── HTTP ──
CORS_ORIGINS = [
    o.strip() for o in os.environ.get(
        "SAFEPATH_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000",
    ).split(",") if o.strip()
]

# ML feature names — order MUST match scoring.build_feature_vector
FEATURE_NAMES = [
    "lat_norm",
    "lng_norm",
    "hour_norm",
    "dow_norm",
    "nearby_count_norm",
    "avg_severity_norm",
    "avg_age_norm",
    "unsafe_ratio",
]

# Report types that count against a location's safety
UNSAFE_TYPES = frozenset({"unsafe", "incident", "suspicious"})
# Report types that trigger retraining / recent-incident penalties
SERIOUS_TYPES = frozenset({"unsafe", "incident"})
