"""
Bootstrap Templates

Fixed files mounted into every fresh sandbox, and the commands run against them.
"""

import json

from config import DEV_SERVER_PORT, PACKAGE_MANAGER


# ============================================
# Commands
# ============================================

INSTALL_COMMAND = (PACKAGE_MANAGER, ["install"])
DEV_SERVER_COMMAND = (PACKAGE_MANAGER, ["run", "dev"])

# Processes matching this are terminated when a preview is disposed
TERMINATION_TARGET = "node"


# ============================================
# Files
# ============================================

PACKAGE_JSON = {
    "package.json": json.dumps({
        "name": "preview-app",
        "type": "module",
        "scripts": {
            "dev": f"vite --port {DEV_SERVER_PORT} --host"
        },
        "dependencies": {
            "react": "^18.2.0",
            "react-dom": "^18.2.0"
        },
        "devDependencies": {
            "@vitejs/plugin-react": "^4.2.1",
            "vite": "^5.0.12"
        }
    }, indent=2),
}

VITE_CONFIG = {
    "vite.config.js": f"""import {{ defineConfig }} from 'vite';
import react from '@vitejs/plugin-react';

export default defineConfig({{
  plugins: [react()],
  server: {{
    host: true,
    strictPort: true,  // fail if {DEV_SERVER_PORT} is taken instead of picking another port
    port: {DEV_SERVER_PORT}
  }}
}});
""",
}
