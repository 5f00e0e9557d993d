#!/usr/bin/env python3
"""
Validation script for Identity Sync.

This script validates that all dependencies are installed and that the
credential cache and identity API client work against the mock identity API.
"""

import sys
import threading
import importlib
import subprocess


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    """Validate all required dependencies."""
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
        ("pytest", "pytest"),
        ("pytest-mock", "pytest_mock"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "identity_sync.config",
        "identity_sync.credentials",
        "identity_sync.engine",
        "identity_sync.identity_api",
        "identity_sync.ldap_client",
        "identity_sync.main",
        "identity_sync.mock_api",
        "identity_sync.notifications",
        "identity_sync.scheduler",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    """Issue a token and list users against a local mock identity API."""
    print("\n=== Functionality Validation ===")

    from identity_sync.credentials import CredentialCache
    from identity_sync.identity_api import IdentityAPIClient, DatastoreReader
    from identity_sync.mock_api import make_server

    server = make_server()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        client = IdentityAPIClient({
            'base_url': f"http://127.0.0.1:{server.server_address[1]}",
            'basic_secret': server.store.secret,
        })
        credentials = CredentialCache(client.issue_token)
        credentials.acquire()
        print("  ✓ Token issuance")

        users = DatastoreReader(client, credentials).fetch_all()
        print(f"  ✓ User listing ({len(users)} users)")
        return True
    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False
    finally:
        server.shutdown()
        server.server_close()


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    result = subprocess.run([sys.executable, "-m", "identity_sync.main", "--help"],
                            capture_output=True, text=True)
    if result.returncode == 0:
        print("  ✓ Help command working")
        return True
    print("  ✗ Help command failed")
    return False


def main():
    """Run all validations."""
    print("Identity Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and fill in LDAP and API settings")
        print("  2. Test with: python -m identity_sync.main --health-check")
        print("  3. Run one cycle: python -m identity_sync.main --once")
        print("  4. Run the service: python -m identity_sync.main")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
