from pathlib import Path
import sys

from gatechat import crypto
from gatechat.config import PortalConfig

# One-off keygen for the portal's session-signing key.
# - RSA-4096, same as what the server would create on first start.
# - Written unencrypted (mode 0600) to GATECHAT_KEY_PATH, or
#   ~/.gatechat/portal_priv.pem by default. Refuses to overwrite.

key_path = PortalConfig.from_env().key_path
if len(sys.argv) > 1:
    key_path = Path(sys.argv[1]).expanduser()

if key_path.exists():
    raise SystemExit(f"{key_path} already exists; remove it first to rotate the key")

privkey = crypto.load_or_create_privkey(key_path)

# Print the public half so it can be pinned by anything verifying tokens offline.
print(f"Portal signing key written to {key_path}")
print("Public key (base64url):")
print(crypto.export_pubkey_b64url(privkey.public_key()))
