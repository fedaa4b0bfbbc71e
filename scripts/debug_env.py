#!/usr/bin/env python3
"""Debug environment variable and config loading."""
import os
from pathlib import Path

from autoloop.core.config import API_KEY_ENV, load_config, load_env, mask_key, resolve_api_key

print("=" * 60)
print("Environment Variable Debug")
print("=" * 60)

print(f"\n1. Current directory: {Path.cwd()}")

print("\n2. Looking for .env file...")
env_path = load_env()
print(f"   Loaded: {env_path.absolute() if env_path else 'none found'}")

print("\n3. Environment variables:")
print(f"   {API_KEY_ENV} in os.environ: {API_KEY_ENV in os.environ}")
print(f"   Masked value: {mask_key(os.getenv(API_KEY_ENV))}")

print("\n4. Config file:")
config = load_config()
print(f"   Oracle: {config['oracle']['model']} @ {config['oracle']['base_url']}")
print(f"   Resolved key: {mask_key(resolve_api_key(config))}")

print("\n5. Related environment variables (masked):")
for key, value in os.environ.items():
    if 'AUTOLOOP' in key.upper() or 'API' in key.upper():
        print(f"   {key}={mask_key(value)}")

print("\n" + "=" * 60)
