"""
Feature Flags Configuration

Centralized feature flag management for the certification engine.
All feature flags are loaded from environment variables.
"""
import os

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


class FeatureFlags:
    """
    Feature flags for the application.

    To add a new feature flag:
    1. Add it here as a class property
    2. Load it from environment variable
    3. Use it in your code
    """

    # Consensus requests: refuse a second PENDING request for the same subject
    FEATURE_BLOCK_DUPLICATE_OPEN_REQUESTS: bool = get_bool_env('FEATURE_BLOCK_DUPLICATE_OPEN_REQUESTS', True)

    # Winners: count only certified scores until the category is CERTIFIED
    FEATURE_WINNERS_CERTIFIED_ONLY: bool = get_bool_env('FEATURE_WINNERS_CERTIFIED_ONLY', True)

    # Judge stage on a category also certifies that category's scores
    FEATURE_CERTIFY_SCORES_ON_JUDGE_STAGE: bool = get_bool_env('FEATURE_CERTIFY_SCORES_ON_JUDGE_STAGE', True)

    # Administrative certification reset endpoint
    FEATURE_ADMIN_RESET: bool = get_bool_env('FEATURE_ADMIN_RESET', True)

    @classmethod
    def get_all_flags(cls) -> dict:
        """Get all feature flags as a dictionary."""
        return {
            key: value
            for key, value in cls.__dict__.items()
            if not key.startswith('_') and isinstance(value, bool)
        }


# Singleton instance for easy importing
feature_flags = FeatureFlags()
