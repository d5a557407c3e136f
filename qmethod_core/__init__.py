"""
Q-Methodology Core Library
==========================

Analysis engine for Q-methodology studies with PQMethod-compatible results.

Modules:
    config      - Global configuration parameters
    errors      - Error taxonomy
    models      - Data model and stage configuration
    data        - Sort loading and validation
    correlation - Respondent correlation matrix
    extraction  - Factorability, factor counts, PCA and centroid extraction
    rotation    - Orthomax, Promax, oblimin and manual rotation
    arrays      - Defining sorts and factor arrays
    stats       - Distinguishing and consensus statements
    bootstrap   - Bootstrap confidence intervals
    pqmethod    - PQMethod .STA/.DAT/.LIS files and compliance checks
    pipeline    - End-to-end runs (AnalysisRun)
    report      - Crib sheets, factor characteristics, text reports
    viz         - Visualization
    output      - Output naming and saving
"""

from . import config
from . import errors
from . import models
from . import data
from . import correlation
from . import extraction
from . import rotation
from . import arrays
from . import stats
from . import bootstrap
from . import pqmethod
from . import pipeline
from . import report
from . import viz
from . import output

from .pipeline import AnalysisRun, apply_rotation, rerotate, run_analysis, start_interactive_rotation

__version__ = '1.0.0'

__all__ = [
    'config',
    'errors',
    'models',
    'data',
    'correlation',
    'extraction',
    'rotation',
    'arrays',
    'stats',
    'bootstrap',
    'pqmethod',
    'pipeline',
    'report',
    'viz',
    'output',
    'AnalysisRun',
    'apply_rotation',
    'rerotate',
    'run_analysis',
    'start_interactive_rotation',
]
