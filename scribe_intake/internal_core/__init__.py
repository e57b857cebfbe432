from .config import IntakeConfig, load_config
from .services import IntakeServices, build_services
from .session_tracker import SessionTracker

__all__ = ["IntakeConfig", "load_config", "IntakeServices", "build_services", "SessionTracker"]
