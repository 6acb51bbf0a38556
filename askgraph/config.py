"""
Configuration module for the AskGraph query engine.

Uses pydantic-settings for configuration management with environment variable support.
Environment variables use ASKGRAPH_ prefix (e.g., ASKGRAPH_GRAPH_PATH).
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SecurityMode = Literal["private", "balanced", "full"]


def _get_default_graph_path() -> Path:
    """Get default path of the exported graph used by the local executor."""
    return Path.home() / ".askgraph" / "graph.json"


class Settings(BaseSettings):
    """Application settings with environment variable support.

    Environment variables:
    - ASKGRAPH_GRAPH_PATH: Path to the exported graph (JSON or YAML)
    - ASKGRAPH_SECURITY_MODE: private, balanced or full
    - ASKGRAPH_EXPANSION_TIMEOUT: Seconds allowed per term-generation call
    - ASKGRAPH_EXPANSION_DECAY: Weight multiplier applied to expanded terms
    - ASKGRAPH_AUTOMATIC_EXPANSION: Expand automatically when results are sparse
    - ASKGRAPH_MAX_CONCURRENT_QUERIES: Worker pool size for independent reads
    - ASKGRAPH_DEBUG: Emit debug log events
    """

    graph_path: Path = Field(default_factory=_get_default_graph_path)
    debug: bool = False

    # Query execution
    query_timeout: float = 30.0
    max_concurrent_queries: int = 4

    # Semantic expansion
    expansion_timeout: float = 10.0
    expansion_decay: float = 0.7
    automatic_expansion: bool = False
    min_results_threshold: int = 1

    # Result processing
    hierarchy_result_threshold: int = 50
    fuzzy_threshold: float = 0.8
    summary_content_length: int = 100
    hierarchy_content_length: int = 250

    # Security and limits
    security_mode: SecurityMode = "balanced"
    private_max_results: int = 10000
    private_default_limit: int = 1000
    balanced_max_results: int = 3000
    balanced_default_limit: int = 500
    full_max_results: int = 300
    full_default_limit: int = 100

    model_config = SettingsConfigDict(env_prefix="ASKGRAPH_")

    def limits_for(self, mode: SecurityMode) -> tuple[int, int]:
        """Return (default_limit, max_results) for an access level."""
        if mode == "private":
            return self.private_default_limit, self.private_max_results
        if mode == "full":
            return self.full_default_limit, self.full_max_results
        return self.balanced_default_limit, self.balanced_max_results


# Global settings instance
settings = Settings()

# Expansion strategies walked in order when automatic expansion is active
AUTOMATIC_EXPANSION_SEQUENCE = ("fuzzy", "synonyms", "related_concepts", "broader_terms")

# Strategies chained by the "all" strategy
CHAINED_EXPANSION_STRATEGIES = ("fuzzy", "synonyms", "related_concepts")

# Human-readable labels for expansion strategies
EXPANSION_STRATEGY_LABELS = {
    "fuzzy": "fuzzy",
    "synonyms": "synonyms",
    "related_concepts": "related terms",
    "broader_terms": "broader terms",
    "custom": "custom",
    "all": "all types",
}
