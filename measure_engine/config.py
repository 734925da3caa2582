# Configuration Module - Procedural approach with module-level variables
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Database Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./measurements.db")

# Logging Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Keypoint Validation
CONFIDENCE_THRESHOLD = float(os.getenv("CONFIDENCE_THRESHOLD", "0.5"))

# Calibration
MIN_CALIBRATION_PIXELS = float(os.getenv("MIN_CALIBRATION_PIXELS", "50.0"))
DEFAULT_HEIGHT_CM = float(os.getenv("DEFAULT_HEIGHT_CM", "170.0"))
CM_PER_FOOT = 30.48
CM_PER_INCH = 2.54
INCHES_PER_CM = 0.393701

# Measurement Accuracy
ACCURACY_THRESHOLD = float(os.getenv("ACCURACY_THRESHOLD", "0.6"))
FRONT_ONLY_DEPTH_RATIO = float(os.getenv("FRONT_ONLY_DEPTH_RATIO", "0.7"))  # depth / width without side view
FRONT_ONLY_CONFIDENCE_PENALTY = float(os.getenv("FRONT_ONLY_CONFIDENCE_PENALTY", "0.7"))

# Multi-View Reconciliation
CONFLICT_TOLERANCE = float(os.getenv("CONFLICT_TOLERANCE", "0.08"))  # relative to the smaller value

# Verification Lifecycle
GRACE_PERIOD_SECONDS = float(os.getenv("GRACE_PERIOD_SECONDS", "120"))
MAX_RETAKES = int(os.getenv("MAX_RETAKES", "3"))

# Mesh Parametrization
NEUTRAL_MESH_PARAM = 0.5
SHAPE_COEFFICIENT_SPREAD = 2.0

# Calibration reference joints: top reference to the midpoint of both heels
CALIBRATION_JOINTS = ("nose", ("left_heel", "right_heel"))

# Measurement Plan - named measurements by physical model
# plausible_ratio bounds are fractions of the reference height
MEASUREMENT_PLAN = {
    "shoulder_width": {
        "model": "linear",
        "joints": ["left_shoulder", "right_shoulder"],
        "views": ["front"],
        "plausible_ratio": (0.20, 0.32),
    },
    "hip_width": {
        "model": "linear",
        "joints": ["left_hip", "right_hip"],
        "views": ["front"],
    },
    "upper_arm_length": {
        "model": "linear",
        "joints": ["left_shoulder", "left_elbow"],
        "views": ["front"],
        "plausible_ratio": (0.12, 0.30),
    },
    "arm_length": {
        "model": "linear",
        "joints": ["left_shoulder", "left_elbow", "left_wrist"],
        "views": ["front"],
        "plausible_ratio": (0.30, 0.60),
    },
    "inseam": {
        "model": "linear",
        "joints": ["left_hip", "left_knee", "left_ankle"],
        "views": ["front"],
        "plausible_ratio": (0.35, 0.55),
    },
    "top_length": {
        "model": "linear",
        "joints": [("left_shoulder", "right_shoulder"), ("left_hip", "right_hip")],
        "views": ["front", "side"],
        "plausible_ratio": (0.12, 0.60),
    },
    "chest_circumference": {
        "model": "circumference",
        "width_joints": ["left_shoulder", "right_shoulder"],
        "depth_joints": ["chest_front", "chest_back"],
        "width_factor": 0.85,
        "plausible_ratio": (0.45, 0.90),
    },
    "waist_circumference": {
        "model": "circumference",
        "width_joints": ["left_hip", "right_hip"],
        "depth_joints": ["waist_front", "waist_back"],
        "width_factor": 1.15,
        "plausible_ratio": (0.35, 0.70),
    },
    "hip_circumference": {
        "model": "circumference",
        "width_joints": ["left_hip", "right_hip"],
        "depth_joints": ["hip_front", "hip_back"],
        "width_factor": 1.45,
        "plausible_ratio": (0.45, 0.95),
    },
}

# Reference Mesh - deformation axes driven by physical measurements (cm)
MESH_NAME = "neutral_body_v1"
MESH_AXES = {
    "shoulder_breadth": {"measurement": "shoulder_width", "min_physical": 30.0, "max_physical": 55.0},
    "chest_girth": {"measurement": "chest_circumference", "min_physical": 70.0, "max_physical": 130.0},
    "waist_girth": {"measurement": "waist_circumference", "min_physical": 55.0, "max_physical": 130.0},
    "hip_girth": {"measurement": "hip_circumference", "min_physical": 75.0, "max_physical": 140.0},
    "arm_length": {"measurement": "arm_length", "min_physical": 45.0, "max_physical": 80.0},
    "leg_length": {"measurement": "inseam", "min_physical": 60.0, "max_physical": 100.0},
    "torso_length": {"measurement": "top_length", "min_physical": 40.0, "max_physical": 75.0},
}
