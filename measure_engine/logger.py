# Structured Logging Module - Procedural Approach
from datetime import datetime
from typing import Any, Dict, Optional

from measure_engine import config


# ANSI Color Codes for Terminal
class Colors:
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    PURPLE = '\033[95m'
    CYAN = '\033[96m'
    WHITE = '\033[97m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


# Step Prefixes with Emojis
STEP_PREFIXES = {
    "FRAME": "🎞️",
    "CALIBRATION": "📏",
    "MEASURE": "📐",
    "AGGREGATE": "🧩",
    "VERIFY": "🔎",
    "MESH": "🧍",
    "DB": "💾",
    "API": "🌐",
    "SYSTEM": "🔧",
    "DEBUG": "🐞",
    "ERROR": "❌",
    "SUCCESS": "✅",
    "WARNING": "⚠️"
}

# Next Step Suggestions
NEXT_STEPS = {
    "FRAME:REJECTED": "Capture a new frame for this view",
    "CALIBRATION:FAILED": "Capture a new frame with the full body visible",
    "AGGREGATE:RECONCILED": "Session is pending review, call POST /sessions/{id}/accept or /reject",
    "VERIFY:RETAKE": "Acknowledge the retake, then call POST /sessions/{id}/retake",
    "VERIFY:ACCEPTED": "Fetch mesh parameters via GET /sessions/{id}/mesh",
    "DB:SAVED": "Data persisted successfully",
}

LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}


def get_timestamp() -> str:
    """Get formatted timestamp"""
    return datetime.now().strftime("%H:%M:%S.%f")[:-3]


def _enabled(level: str) -> bool:
    return LEVELS.get(level, 20) >= LEVELS.get(config.LOG_LEVEL.upper(), 20)


def log_step(step: str, action: str, data: Optional[Dict[str, Any]] = None,
             color: str = Colors.CYAN, level: str = "INFO"):
    """
    Log a step with structured format

    Args:
        step: Step category (FRAME, CALIBRATION, MEASURE, VERIFY, DB, etc.)
        action: Description of the action
        data: Optional dictionary of data to display
        color: ANSI color code
        level: DEBUG, INFO, WARNING or ERROR (filtered by config.LOG_LEVEL)
    """
    if not _enabled(level):
        return

    prefix = STEP_PREFIXES.get(step, "🔹")
    timestamp = get_timestamp()

    print(f"{color}{Colors.BOLD}[{timestamp}] {prefix} [{step}]{Colors.RESET} {action}")

    if data:
        for key, value in data.items():
            # Truncate long values
            if isinstance(value, str) and len(value) > 100:
                value = value[:97] + "..."
            print(f"   {Colors.WHITE}├─ {key}: {value}{Colors.RESET}")

    # Suggest next step
    next_step_key = f"{step}:{action.split()[0].upper()}" if action else step
    if next_step_key in NEXT_STEPS:
        print(f"   {Colors.YELLOW}└─ >>> Next: {NEXT_STEPS[next_step_key]}{Colors.RESET}")
    print()  # Blank line for readability


def log_frame(action: str, data: Optional[Dict[str, Any]] = None):
    """Log keypoint frame validation events"""
    log_step("FRAME", action, data, Colors.BLUE)


def log_calibration(action: str, data: Optional[Dict[str, Any]] = None):
    """Log calibration events"""
    log_step("CALIBRATION", action, data, Colors.PURPLE)


def log_measure(action: str, data: Optional[Dict[str, Any]] = None):
    """Log measurement computation events"""
    log_step("MEASURE", action, data, Colors.CYAN, level="DEBUG")


def log_aggregate(action: str, data: Optional[Dict[str, Any]] = None):
    """Log multi-view reconciliation events"""
    log_step("AGGREGATE", action, data, Colors.CYAN)


def log_verify(action: str, data: Optional[Dict[str, Any]] = None):
    """Log verification state transitions"""
    log_step("VERIFY", action, data, Colors.GREEN)


def log_mesh(action: str, data: Optional[Dict[str, Any]] = None):
    """Log mesh parametrization events"""
    log_step("MESH", action, data, Colors.PURPLE)


def log_db(action: str, data: Optional[Dict[str, Any]] = None):
    """Log database events"""
    log_step("DB", action, data, Colors.WHITE)


def log_api(action: str, data: Optional[Dict[str, Any]] = None):
    """Log API events"""
    log_step("API", action, data, Colors.CYAN)


def log_info(action: str, data: Optional[Dict[str, Any]] = None):
    """Log general system events"""
    log_step("SYSTEM", action, data, Colors.WHITE)


def log_debug(action: str, data: Optional[Dict[str, Any]] = None):
    """Log debug detail (only when LOG_LEVEL=DEBUG)"""
    log_step("DEBUG", action, data, Colors.WHITE, level="DEBUG")


def log_error(action: str, error: Exception, data: Optional[Dict[str, Any]] = None):
    """Log errors with their type"""
    error_data = dict(data or {})
    error_data["Error"] = str(error)
    error_data["Type"] = type(error).__name__
    log_step("ERROR", action, error_data, Colors.RED, level="ERROR")


def log_success(action: str, data: Optional[Dict[str, Any]] = None):
    """Log success events"""
    log_step("SUCCESS", action, data, Colors.GREEN)


def log_warning(action: str, data: Optional[Dict[str, Any]] = None):
    """Log warnings"""
    log_step("WARNING", action, data, Colors.YELLOW, level="WARNING")


def log_lifecycle(phase: str, details: str = ""):
    """
    Log major lifecycle events with clear visual separation

    Args:
        phase: Phase name (e.g., "STARTUP", "SHUTDOWN")
        details: Optional details
    """
    separator = "=" * 80
    print(f"\n{Colors.BOLD}{Colors.CYAN}{separator}{Colors.RESET}")
    print(f"{Colors.BOLD}{Colors.CYAN}>>> {phase} {details}{Colors.RESET}")
    print(f"{Colors.BOLD}{Colors.CYAN}{separator}{Colors.RESET}\n")
