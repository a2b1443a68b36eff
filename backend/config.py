import os
from decimal import Decimal


class Config:
    """Configuration class for the Adaptive Exam Engine"""

    # Database Configuration
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./adaptive_exam.db")

    # Adaptive Engine Configuration
    ENGINE_CONFIG = {
        "base_step": Decimal(os.getenv("THETA_BASE_STEP", "0.18")),
        "slope": Decimal(os.getenv("THETA_SLOPE", "0.05")),
        "initial_theta": Decimal(os.getenv("INITIAL_THETA", "0.50")),
        "default_total_questions": int(os.getenv("DEFAULT_TOTAL_QUESTIONS", "10")),
        "candidate_window": int(os.getenv("CANDIDATE_WINDOW", "25")),
        "default_difficulty": 3,
        "difficulty_range": (1, 5),
        "theta_bounds": (Decimal("0"), Decimal("1")),
    }

    # Difficulty scoring (local heuristic, guarded by a daily counter)
    SCORING_CONFIG = {
        "max_calls_per_day": int(os.getenv("AI_MAX_CALLS_PER_DAY", "500")),
        "model_name": "Local-System",
    }

    # API Configuration
    API_CONFIG = {
        "host": os.getenv("API_HOST", "0.0.0.0"),
        "port": int(os.getenv("API_PORT", "8000")),
        "cors_origins": os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
        "title": "Adaptive Exam API",
        "version": "1.0.0"
    }

    # Logging Configuration
    LOGGING_CONFIG = {
        "level": os.getenv("LOG_LEVEL", "INFO"),
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "log_file": os.getenv("LOG_FILE", ""),
    }

    @classmethod
    def get_engine_config(cls):
        """Get adaptive engine configuration"""
        return cls.ENGINE_CONFIG

    @classmethod
    def validate_config(cls):
        """Validate configuration values"""
        errors = []

        engine = cls.ENGINE_CONFIG
        if engine["base_step"] <= 0:
            errors.append("THETA_BASE_STEP must be positive")

        if engine["slope"] < 0:
            errors.append("THETA_SLOPE must not be negative")

        low, high = engine["theta_bounds"]
        if not low <= engine["initial_theta"] <= high:
            errors.append("INITIAL_THETA must lie within [0, 1]")

        if engine["default_total_questions"] < 1:
            errors.append("DEFAULT_TOTAL_QUESTIONS must be at least 1")

        if engine["candidate_window"] < 1:
            errors.append("CANDIDATE_WINDOW must be at least 1")

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

        return True


def get_config():
    """Get configuration based on environment"""
    return Config()
