from knowledge_pipeline.tokens.counter import (
    SAFE_TOKEN_LIMIT,
    HeuristicTokenEstimator,
    TokenCounter,
    TokenEstimator,
    token_counter,
)

__all__ = ["SAFE_TOKEN_LIMIT", "HeuristicTokenEstimator", "TokenCounter", "TokenEstimator", "token_counter"]
