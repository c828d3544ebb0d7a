"""
Application configuration.

Settings are loaded from environment variables with sensible defaults
for local development. In production, you'd set these via your hosting
platform's environment variable settings.
"""

import os

# Root of the function tree to scan. Every directory below it that holds
# an entry module is a deployable function.
# Example: FUNCTIONS_ROOT=./supabase/functions
FUNCTIONS_ROOT = os.getenv("FUNCTIONS_ROOT", "./functions")

# Prefix used to build namespaced function ids: "<prefix>_<project>_<name>".
# Changing it changes every namespaced id, so keep it stable per deployment.
NAMESPACE_PREFIX = os.getenv("NAMESPACE_PREFIX", "ef")

# Entry module file names that mark a directory as a function, in priority
# order. Only Python entry modules can be executed in-process; the others
# are still discovered and deployed.
ENTRY_MODULES = tuple(
    name.strip()
    for name in os.getenv("ENTRY_MODULES", "index.py,index.ts,index.js").split(",")
    if name.strip()
)

# Maximum time (seconds) a cross-function invocation may run before the
# proxy gives up and returns a 504 response. 0 disables the deadline.
INVOKE_TIMEOUT_SECONDS = float(os.getenv("INVOKE_TIMEOUT_SECONDS", "30"))

# When enabled, process environment values override .env values for keys
# the files already define. New keys are never pulled from the process.
ENV_SYSTEM_OVERRIDE = os.getenv("ENV_SYSTEM_OVERRIDE", "true").lower() in ("1", "true", "yes")

# The frontend URL, used to configure CORS (Cross-Origin Resource Sharing).
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# How many security violation records are kept for auditing. Older records
# are dropped first, so a flood of denied requests can't grow memory.
MAX_SECURITY_VIOLATIONS = int(os.getenv("MAX_SECURITY_VIOLATIONS", "1000"))
