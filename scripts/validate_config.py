#!/usr/bin/env python3
"""Configuration validation script."""

import sys
from pathlib import Path
from typing import Optional

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from protocol_app.config.loader import ConfigLoader
from protocol_app.config.validation import ConfigIssue, ConfigValidator


def validate_owner_config(loader: ConfigLoader, owner_id: Optional[str]) -> list[ConfigIssue]:
    """Validate the merged configuration an owner would run with."""
    config = loader.merge_config(owner_id)
    return ConfigValidator.validate_config(config)


def report(label: str, issues: list[ConfigIssue]) -> bool:
    if issues:
        print(f"❌ {label}: {len(issues)} validation errors")
        for issue in issues:
            print(f"  • {issue.field}: {issue.message} (value: {issue.value})")
        return False

    print(f"✅ {label} is valid")
    return True


def main():
    """Main validation function."""
    config_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    loader = ConfigLoader.create(config_dir)
    print(f"🔍 Validating configuration in {loader.config_dir}...")

    all_valid = report("global settings", validate_owner_config(loader, None))

    delivery = loader.load_settings().get("delivery") or {}
    all_valid &= report("delivery destinations", ConfigValidator.validate_delivery_section(delivery))

    for owner_id in loader.list_owners():
        try:
            all_valid &= report(f"owner {owner_id}", validate_owner_config(loader, owner_id))
        except Exception as e:
            print(f"❌ Error validating {owner_id}: {e}")
            all_valid = False

    if all_valid:
        print("\n🎉 All configuration validation passed!")
        sys.exit(0)
    else:
        print("\n❌ Configuration validation failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
