"""Generate an Ed25519 attestation key for a reader and enroll it in the reader registry."""
import os, json, sys
from nacl.signing import SigningKey

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cardgate import config
from cardgate.security import validate_reader_id
from cardgate.util import b64e

def main(reader_id: str):
    validate_reader_id(reader_id)
    sk = SigningKey.generate()

    os.makedirs("secrets/readers", exist_ok=True)
    with open(f"secrets/readers/{reader_id}.json","w",encoding="utf-8") as f:
        json.dump({"reader_id": reader_id, "private_key_b64": b64e(bytes(sk))}, f, indent=2)

    registry_path = config.READER_REGISTRY_PATH
    if os.path.exists(registry_path):
        registry = json.load(open(registry_path,"r",encoding="utf-8"))
    else:
        registry = {"reader_keys": {}}
    registry.setdefault("reader_keys", {})[reader_id] = b64e(bytes(sk.verify_key))

    os.makedirs(os.path.dirname(registry_path) or ".", exist_ok=True)
    with open(registry_path,"w",encoding="utf-8") as f:
        json.dump(registry, f, indent=2)

    print(f"Generated key for reader {reader_id} and enrolled it in {registry_path}.")

if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python tools/gen_reader_key.py <readerId>"); raise SystemExit(2)
    main(sys.argv[1])
