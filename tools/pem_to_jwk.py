from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from pathlib import Path
import json, sys

from gymvc.core.keys import ed25519_jwk

path = Path(sys.argv[1] if len(sys.argv) > 1 else "keys/issuer_public.pem")
pub = serialization.load_pem_public_key(path.read_bytes())
if not isinstance(pub, Ed25519PublicKey):
    sys.exit(f"{path}: not an Ed25519 public key")
print(json.dumps(ed25519_jwk(pub), indent=2))
