#!/usr/bin/env python3
"""
Setup Verification Script

Validates configuration, connections and the browser runtime before running
the session manager. Run this after setting up your .env file.

Usage:
    python scripts/verify_setup.py
"""

import asyncio
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables
from dotenv import load_dotenv
load_dotenv()


def print_header(title: str) -> None:
    """Print section header."""
    print(f"\n{'='*60}")
    print(f" {title}")
    print(f"{'='*60}")


def print_result(name: str, success: bool, message: str = "") -> None:
    """Print check result."""
    status = "[PASS]" if success else "[FAIL]"
    color = "\033[92m" if success else "\033[91m"
    reset = "\033[0m"
    msg = f" - {message}" if message else ""
    print(f"  {color}{status}{reset} {name}{msg}")


def check_env_file() -> bool:
    """Check if .env file exists."""
    env_path = project_root / ".env"
    exists = env_path.exists()
    if not exists:
        print_result(".env file", False, "File not found, defaults will be used")
    else:
        print_result(".env file", True, "Found")
    return exists


def check_required_vars() -> dict[str, bool]:
    """Check required environment variables."""
    results = {}

    required = [
        ("DATABASE_URL", "Required for PostgreSQL"),
        ("REDIS_URL", "Required for Redis"),
        ("IDENTITY_URL", "Required to validate bearer tokens"),
        ("IDENTITY_API_KEY", "Sent to the identity provider"),
    ]

    for var, description in required:
        value = os.getenv(var, "")

        if not value:
            print_result(var, False, f"Not set - {description}")
            results[var] = False
        else:
            # Mask sensitive values
            if "KEY" in var or "SECRET" in var or "PASSWORD" in var:
                masked = f"{value[:8]}...{value[-4:]}" if len(value) > 12 else "***"
            else:
                masked = value
            print_result(var, True, f"Set ({masked})")
            results[var] = True

    return results


def check_optional_vars() -> None:
    """Check optional environment variables."""
    from app.config import get_settings

    settings = get_settings()
    optional = [
        ("APP_ENV", settings.app_env),
        ("DEBUG", settings.debug),
        ("PORT", settings.port),
        ("BROWSER_PROFILE_DIR", settings.browser_profile_dir),
        ("BROWSER_HEADLESS", settings.browser_headless),
        ("PAIRING_TTL_SECONDS", settings.pairing_ttl_seconds),
        ("CONNECTED_TTL_SECONDS", settings.connected_ttl_seconds),
        ("REAPER_INTERVAL_SECONDS", settings.reaper_interval_seconds),
    ]

    for var, value in optional:
        print_result(var, True, f"{value}")


async def check_postgres() -> bool:
    """Verify PostgreSQL connection."""
    from app.infra.database import check_db_health

    healthy = await check_db_health()
    if healthy:
        print_result("PostgreSQL", True, "Connection successful")
    else:
        print_result("PostgreSQL", False, "Connection failed")
    return healthy


async def check_redis() -> bool:
    """Verify Redis connection."""
    from app.infra.redis import check_redis_health

    healthy = await check_redis_health()
    if healthy:
        print_result("Redis", True, "Connection successful")
    else:
        print_result("Redis", False, "Connection failed (rate limiting fails open)")
    return healthy


async def check_identity_provider() -> bool:
    """Check if the identity provider is reachable."""
    import httpx

    url = os.getenv("IDENTITY_URL", "http://localhost:54321")

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{url}/auth/v1/health")
    except httpx.HTTPError:
        print_result("Identity provider", False, f"Not reachable at {url}")
        return False

    if response.status_code < 500:
        print_result("Identity provider", True, f"Reachable at {url}")
        return True
    print_result("Identity provider", False, f"Responded with {response.status_code}")
    return False


async def check_browser() -> bool:
    """Verify a headless Chromium can be launched."""
    from playwright.async_api import Error as PlaywrightError, async_playwright

    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            version = browser.version
            await browser.close()
    except PlaywrightError as e:
        print_result("Chromium", False, "Run: playwright install chromium")
        print(f"         {str(e).splitlines()[0][:70]}")
        return False

    print_result("Chromium", True, f"Version {version}")
    return True


def check_dependencies() -> bool:
    """Check if required Python packages are installed."""
    required_packages = [
        "fastapi",
        "uvicorn",
        "pydantic",
        "pydantic_settings",
        "sqlalchemy",
        "asyncpg",
        "redis",
        "httpx",
        "playwright",
        "qrcode",
    ]

    missing = []
    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing.append(package)

    if missing:
        print_result("Python packages", False, f"Missing: {', '.join(missing)}")
        return False
    else:
        print_result("Python packages", True, "All required packages installed")
        return True


async def main():
    """Run all verification checks."""
    print("\n" + "="*60)
    print(" WhatsApp Session Manager - Setup Verification")
    print("="*60)

    all_passed = True
    critical_failed = False

    print_header("Environment File")
    check_env_file()

    print_header("Python Dependencies")
    if not check_dependencies():
        print("\n  Install with: pip install -e .[test]")
        return 1

    print_header("Required Environment Variables")
    var_results = check_required_vars()
    if not all(var_results.values()):
        all_passed = False

    print_header("Optional Environment Variables")
    check_optional_vars()

    print_header("Service Connections")

    if var_results.get("DATABASE_URL"):
        if not await check_postgres():
            all_passed = False
            critical_failed = True
    else:
        print_result("PostgreSQL", False, "Skipped - DATABASE_URL not set")

    if var_results.get("REDIS_URL"):
        await check_redis()  # Non-critical (fail-open)
    else:
        print_result("Redis", False, "Skipped - REDIS_URL not set")

    if not await check_identity_provider():
        all_passed = False
        critical_failed = True

    print_header("Browser Runtime")
    if not await check_browser():
        critical_failed = True

    print_header("Summary")

    if critical_failed:
        print("\n  \033[91mCRITICAL: Some required services failed.\033[0m")
        print("  Please fix the issues above before running the application.")
        print()
        return 1
    elif not all_passed:
        print("\n  \033[93mWARNING: Some optional checks failed.\033[0m")
        print("  The application may run with limited functionality.")
        print()
        return 0
    else:
        print("\n  \033[92mAll checks passed!\033[0m")
        print("  You can start the application with:")
        print("    uvicorn app.main:app --reload")
        print()
        return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
