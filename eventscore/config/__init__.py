from eventscore.config.feature_flags import FeatureFlags, feature_flags, get_bool_env
from eventscore.config.settings import settings

__all__ = ["FeatureFlags", "feature_flags", "get_bool_env", "settings"]
