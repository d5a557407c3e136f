"""
Global Configuration for the Q-Methodology Analysis Engine
==========================================================

Central location for default parameters used across all analysis stages.
Stage configuration objects in models.py take their defaults from here;
override them per run rather than editing these values.
"""

# =============================================================================
# DATA CONFIGURATION
# =============================================================================
DEFAULT_STATEMENTS_FILE = 'Data/study.sta'
DEFAULT_SORTS_FILE = 'Data/study.dat'

# Column names used when sorts are loaded from a wide CSV
PARTICIPANT_COLUMN = 'participant'

# Standard quasi-normal grid for 40 statements (-4..+4)
DEFAULT_GRID = {
    -4: 2,
    -3: 3,
    -2: 5,
    -1: 6,
    0: 8,
    1: 6,
    2: 5,
    3: 3,
    4: 2,
}

# =============================================================================
# EXTRACTION CONFIGURATION
# =============================================================================
DEFAULT_EXTRACTION = 'pca'          # 'pca' or 'centroid'
KAISER_THRESHOLD = 1.0              # Retain eigenvalues above this
CENTROID_MAX_PASSES = 100           # Reflection sweeps per centroid factor
CENTROID_STABLE_PASSES = 2          # Consecutive no-flip passes to converge
PSD_TOLERANCE = 1e-8                # Allowed negative eigenvalue magnitude
MIN_FACTOR_EIGENVALUE = 1e-10       # Extracted factors must exceed this

# Parallel analysis
PARALLEL_PERMUTATIONS = 100
PARALLEL_PERCENTILE = 95

RANDOM_SEED = 42

# =============================================================================
# ROTATION CONFIGURATION
# =============================================================================
DEFAULT_ROTATION = 'varimax'
ROTATION_TOLERANCE = 1e-5           # Criterion change that counts as converged
ROTATION_MAX_SWEEPS = 50
KAISER_NORMALIZE = True

PROMAX_KAPPA = 4.0                  # Power used to build the Promax target
PROMAX_RCOND = 1e-10                # Pseudo-inverse cutoff for near-singular fits
PROMAX_MIN_TARGET_NORM = 1e-8       # Target columns below this are degenerate

OBLIMIN_GAMMA = 0.0                 # 0 = direct quartimin
OBLIMIN_MAX_ITER = 500

# Rotation quality summary
SALIENT_LOADING = 0.4
HYPERPLANE_LOADING = 0.1

# =============================================================================
# FACTOR ARRAY CONFIGURATION
# =============================================================================
DEFINING_LOADING_SQUARED = 0.5      # loading^2 > 0.5: factor explains >50% of sort
SIGNIFICANCE_Z = 1.96               # |loading| > 1.96 / sqrt(n_statements)
ZERO_VARIANCE_TOLERANCE = 1e-12     # Relative sd below which weighted scores are flat

# =============================================================================
# SIGNIFICANCE CONFIGURATION
# =============================================================================
ALPHA_STRICT = 0.01
ALPHA = 0.05
AVERAGE_SORT_RELIABILITY = 0.80     # Assumed test-retest reliability of a Q-sort

# =============================================================================
# BOOTSTRAP CONFIGURATION
# =============================================================================
BOOTSTRAP_RESAMPLES = 1000
BOOTSTRAP_CONFIDENCE = 0.95
BOOTSTRAP_MAX_DROP_RATE = 0.20      # Fail the run above this dropped fraction
BOOTSTRAP_WORKERS = None            # None = os.cpu_count()

# =============================================================================
# COMPLIANCE CONFIGURATION (agreement with PQMethod reference output)
# =============================================================================
COMPLIANCE_TOLERANCES = {
    'loading_correlation': 0.99,    # minimum
    'eigenvalue_delta': 0.01,       # maximum absolute
    'loading_delta': 0.001,         # maximum absolute
    'zscore_delta': 0.0005,         # maximum absolute
}

# =============================================================================
# OUTPUT CONFIGURATION
# =============================================================================
DEFAULT_OUTPUT_BASE = 'outputs'
DEFAULT_DPI = 150

# =============================================================================
# KMO INTERPRETATION LABELS
# =============================================================================
KMO_THRESHOLDS = {
    0.9: "Marvelous",
    0.8: "Meritorious",
    0.7: "Middling",
    0.6: "Mediocre",
    0.5: "Miserable",
    0.0: "Unacceptable",
}


def get_kmo_label(kmo_value: float) -> str:
    """Return human-readable KMO interpretation."""
    for threshold, label in sorted(KMO_THRESHOLDS.items(), reverse=True):
        if kmo_value >= threshold:
            return label
    return "Unacceptable"
