"""Verify the hash-chain integrity of the audit log stored in the Cardgate database."""
import os, sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pathlib import Path
from cardgate import config, db
from cardgate.audit import verify_chain

def main(db_path=None):
    if db_path:
        config.DB_PATH = Path(db_path)
    if not config.DB_PATH.exists():
        print("FAIL: database not found:", config.DB_PATH)
        sys.exit(1)
    result = verify_chain(db.export_audit_log_full())
    if not result["valid"]:
        print("FAIL:", result["reason"], "at seq", result["broken_at"])
        sys.exit(1)
    print(f"PASS: audit log chain valid ({result['checked']} entries)")

if __name__ == "__main__":
    if len(sys.argv) > 2:
        print("Usage: python tools/verify_audit_chain.py [db_path]"); raise SystemExit(2)
    main(sys.argv[1] if len(sys.argv) == 2 else None)
