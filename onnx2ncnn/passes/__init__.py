from .classify import Classification, classify, BINARY_WEIGHT_OPS
from .passes import Pass, PassResult, DEFAULT_PIPELINE, run_pipeline
from .fusion import (
    fuse, FusionPattern, FUSION_PATTERNS, register_fusion,
)
