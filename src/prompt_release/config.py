"""Provide global constants for the project."""
from pathlib import Path
from dotenv import dotenv_values
import logging

PROJECT_ROOT = Path(__file__).resolve().parents[2]

DB_FILE = Path("prompt_release.db")

DATA_DIR = Path("data")
DB_DIR = Path("db")
LOGS_DIR = Path("logs")

DATA_PATH = (PROJECT_ROOT / DATA_DIR).resolve()
DB_PATH = (DATA_PATH / DB_DIR).resolve()
LOGS_PATH = (DATA_PATH / LOGS_DIR).resolve()

# Migrations ship with the package
MIGRATIONS_PATH = (Path(__file__).resolve().parent / "db" / "migrations").resolve()

# Ensure folders are created if not existing
DATA_PATH.mkdir(exist_ok=True)
DB_PATH.mkdir(exist_ok=True)
LOGS_PATH.mkdir(exist_ok=True)

DOTENV_FILE = Path(".env")
DOTENV_FILE_PATH = (PROJECT_ROOT / DOTENV_FILE).resolve()

_ENV = dotenv_values(DOTENV_FILE_PATH)

DB_FILE_PATH = Path(
    _ENV.get("DB_FILE_PATH") or (DATA_PATH / DB_DIR / DB_FILE)
).resolve()

LOG_LEVEL = (_ENV.get("LOG_LEVEL") or "INFO").upper()

LOG_FILE = Path("application.log")
LOG_FILE_PATH = (LOGS_PATH / LOG_FILE).resolve()

# SQLite waits this long for a competing writer before raising
DB_BUSY_TIMEOUT_SECONDS = float(_ENV.get("DB_BUSY_TIMEOUT_SECONDS") or 5.0)

# Roles allowed to vote on approvals, deploy and roll back
PRIVILEGED_ROLES = frozenset(
    role.strip()
    for role in (_ENV.get("PRIVILEGED_ROLES") or "developer,admin").split(",")
    if role.strip()
)
REVIEWER_ROLES = ("reviewer", "developer", "admin")

# Actor recorded on deployments rolled back by the regression monitor
AUTO_ROLLBACK_ACTOR = _ENV.get("AUTO_ROLLBACK_ACTOR") or "system:regression-monitor"

# Deployment / regression windows (minutes)
BASELINE_WINDOW_MINUTES = int(_ENV.get("BASELINE_WINDOW_MINUTES") or 60)
EVALUATION_WINDOW_MINUTES = int(_ENV.get("EVALUATION_WINDOW_MINUTES") or 30)

REGRESSION_THRESHOLDS = {
    # relative drop in success rate that counts as a regression
    "success_rate_threshold": float(_ENV.get("SUCCESS_RATE_THRESHOLD") or 0.05),
    # relative drop in efficiency that counts as a regression
    "efficiency_threshold": float(_ENV.get("EFFICIENCY_THRESHOLD") or 0.10),
    # relative increase in error rate that counts as a regression
    "error_rate_threshold": float(_ENV.get("ERROR_RATE_THRESHOLD") or 0.05),
    # relative change that escalates to "high"
    "high_threshold": float(_ENV.get("HIGH_SEVERITY_THRESHOLD") or 0.10),
    # relative success-rate drop that escalates to "critical"
    "critical_success_rate_drop": float(_ENV.get("CRITICAL_SUCCESS_RATE_DROP") or 0.20),
    # relative error-rate increase that escalates to "critical" (1.0 == doubled)
    "critical_error_rate_increase": float(_ENV.get("CRITICAL_ERROR_RATE_INCREASE") or 1.0),
    # post-deployment samples needed before "critical" may be reported
    "min_sample_size": int(_ENV.get("MIN_SAMPLE_SIZE") or 50),
}

DEFAULT_REQUIRED_APPROVALS = int(_ENV.get("DEFAULT_REQUIRED_APPROVALS") or 1)
DEPLOYMENT_HISTORY_LIMIT = 20


def configure_logging():
    root = logging.getLogger()
    if root.handlers:
        return

    from logging.handlers import RotatingFileHandler

    # console/basic config
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # file handler
    file_handler = RotatingFileHandler(
        LOG_FILE_PATH,
        maxBytes=5 * 1024 * 1024,  # 5 MB per file
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(LOG_LEVEL)
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)


def main():
    """Print global constants."""
    files_and_paths = {"PROJECT_ROOT": PROJECT_ROOT,
                       "DATA_PATH": DATA_PATH,
                       "DB_PATH": DB_PATH,
                       "DB_FILE_PATH": DB_FILE_PATH,
                       "MIGRATIONS_PATH": MIGRATIONS_PATH,
                       "LOGS_PATH": LOGS_PATH,
                       "LOG_FILE_PATH": LOG_FILE_PATH,
                       }

    print("Current file and path resolutions:")
    print("----------------------------------")
    for label, file_path in files_and_paths.items():
        print(f"{label}: {file_path}")

    print("\nRelease pipeline settings:")
    print("--------------------------")
    print(f"PRIVILEGED_ROLES: {sorted(PRIVILEGED_ROLES)}")
    print(f"BASELINE_WINDOW_MINUTES: {BASELINE_WINDOW_MINUTES}")
    print(f"EVALUATION_WINDOW_MINUTES: {EVALUATION_WINDOW_MINUTES}")
    for key, value in REGRESSION_THRESHOLDS.items():
        print(f"{key}: {value}")


if __name__ == "__main__":
    main()
