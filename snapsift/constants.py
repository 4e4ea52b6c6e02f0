"""Project-wide constants for snapsift.

Centralizes compiled-in literals so feature extraction, classification and
learning agree on the same numbers. Anything a user may want to tune is also
exposed through settings.DEFAULT_SETTINGS.
"""

# Feature extraction
MAX_ANALYSIS_PIXELS = 512 * 1024
"""Images above this pixel count are downsampled (LANCZOS) before analysis"""

BLUR_NORMALIZATION = 32.0
"""Mean absolute Laplacian (luma 0..255) that maps to blur_score 1.0"""

BRIGHTNESS_GRID = 64
"""Target samples per axis for the coarse brightness grid"""

NOISE_NORMALIZATION = 20.0
"""Noise sigma (luma 0..255) that maps to noise_level 1.0"""

ASPECT_TOLERANCE = 0.1
"""Absolute tolerance when matching an aspect ratio (or its reciprocal)"""

TEXT_EDGE_DELTA = 0.3
"""Normalized horizontal luma change counted as a high-frequency sample"""

TEXT_PATTERN_MIN_RATIO = 0.4
"""Fraction of high-frequency samples above which a text pattern is detected"""

TEXT_SAMPLE_GRID = 32
"""Samples per axis inside the centre window used for text density"""

NEUTRAL_BLUR_SCORE = 1.0
"""Blur score reported when pixel data is unavailable (assume sharp)"""

NEUTRAL_BRIGHTNESS = 0.5
"""Brightness reported when pixel data is unavailable"""

UNAVAILABLE_HASH_PREFIX = "unavailable:"
"""Prefix of exact hashes minted for items without pixel data"""

PERCEPTUAL_HASH_SIZE = 8
"""Side of the average-hash grid (8x8 -> 64 bits)"""

PERCEPTUAL_HASH_BITS = PERCEPTUAL_HASH_SIZE * PERCEPTUAL_HASH_SIZE

# Classification
DOCUMENT_MIN_SHARPNESS = 0.7
TEXT_HEAVY_MIN_DENSITY = 0.5
LOW_LIGHT_MAX_BRIGHTNESS = 0.3
LOW_LIGHT_MIN_SHARPNESS = 0.2

QUALITY_WEIGHTS = {"resolution": 0.3, "sharpness": 0.4, "noise": 0.3}
"""Weights of the composite quality score (noise enters inverted)"""

REFERENCE_MEGAPIXELS = 12.0
"""Resolution that earns the full resolution component of the quality score"""

# Learning
FEEDBACK_RETENTION = 1000
"""Maximum feedback entries kept in the log (oldest evicted first)"""

LEARNING_WINDOW = 100
"""Most recent feedback entries considered by a threshold recompute"""

RECENT_ACCURACY_WINDOW = 20
"""Entries used for the 'recent accuracy' analytics figure"""

CHANGE_LOG_SIZE = 200
"""Threshold changes and snapshots kept for auditing"""

# Training session
COMPLETION_ACCURACY_BOUND = 0.8
COMPLETION_MIN_SAMPLES = 10
REFILL_WATERMARK = 4
"""Unrated items left in the queue that trigger a corpus refill"""

BATCH_SIZE = 20
"""Items requested from the corpus loader per refill"""

MAX_WORKERS = 4
"""Upper bound for the feature extraction thread pool"""

# Persistence
STATE_KEY = "snapsift.state.v1"
RECORD_SCHEMA = "snapsift.state"
RECORD_VERSION = 1

# Locking
LOCK_TIMEOUT_SEC = 0.05
LOCK_MAX_ATTEMPTS = 20
