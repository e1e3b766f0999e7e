"""
Preview Sandbox Configuration
后端配置文件
"""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


# ==================== Provisioning Timeouts ====================
# 超时配置 (milliseconds)

INSTALL_TIMEOUT_MS = int(os.getenv("PREVIEW_INSTALL_TIMEOUT_MS", "120000"))
READY_TIMEOUT_MS = int(os.getenv("PREVIEW_READY_TIMEOUT_MS", "60000"))
INSTALL_DRAIN_GRACE_MS = int(os.getenv("PREVIEW_INSTALL_DRAIN_GRACE_MS", "2000"))

# ==================== Sandbox Configuration ====================
# 沙箱配置

DEV_SERVER_PORT = int(os.getenv("PREVIEW_DEV_PORT", "5173"))
SANDBOX_BASE_DIR = os.getenv("PREVIEW_SANDBOX_DIR", "/tmp/preview-sandboxes")
PACKAGE_MANAGER = os.getenv("PREVIEW_PACKAGE_MANAGER", "npm")
READY_PROBE_INTERVAL_S = float(os.getenv("PREVIEW_READY_PROBE_INTERVAL", "0.5"))

# WebContainer-style sandboxes need a secure context (https or localhost)
REQUIRE_SECURE_CONTEXT = _env_bool("PREVIEW_REQUIRE_SECURE_CONTEXT", "true")

# ==================== Server Configuration ====================
# 服务器配置

SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("SERVER_PORT", "5100"))
