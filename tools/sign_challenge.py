"""Sign an attestation challenge with a reader key produced by gen_reader_key.py."""
import os, json, sys
from nacl.signing import SigningKey

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cardgate.util import b64d, b64e

def main(reader_id: str, challenge: str):
    key = json.load(open(f"secrets/readers/{reader_id}.json","r",encoding="utf-8"))
    sk = SigningKey(b64d(key["private_key_b64"]))
    sig = sk.sign(challenge.encode("utf-8")).signature
    print(json.dumps({"challenge": challenge, "signature": b64e(sig)}, indent=2))

if __name__ == "__main__":
    if len(sys.argv) != 3:
        print("Usage: python tools/sign_challenge.py <readerId> <challenge>"); raise SystemExit(2)
    main(sys.argv[1], sys.argv[2])
