"""Issue a CA-signed certificate: relay/CA hostnames or user identities.

User certificates go in the credential directory as ``<username>_cert.pem``,
which is where the relay looks up sendmsg recipients:

    python scripts/gen_cert.py --cn alice --out certs/alice
    python scripts/gen_cert.py --cn relay.local --out certs/relay
"""

import argparse
from pathlib import Path

from cryptography.x509.oid import NameOID

from certrelay.crypto.issue import generate_rsa_key, issue_certificate, write_key_pair
from certrelay.crypto.keys import load_private_key
from certrelay.crypto.pki import load_certificate


def main():
    parser = argparse.ArgumentParser(description="Issue certificate signed by Root CA")
    parser.add_argument(
        "--cn",
        type=str,
        required=True,
        help="Common Name: a hostname, or a username for user certificates"
    )
    parser.add_argument(
        "--out",
        type=str,
        required=True,
        help="Output prefix (e.g., certs/alice -> certs/alice_key.pem, certs/alice_cert.pem)"
    )
    parser.add_argument(
        "--ca-key",
        type=str,
        default="certs/ca_key.pem",
        help="Path to CA private key (default: certs/ca_key.pem)"
    )
    parser.add_argument(
        "--ca-cert",
        type=str,
        default="certs/ca_cert.pem",
        help="Path to CA certificate (default: certs/ca_cert.pem)"
    )
    parser.add_argument(
        "--valid-days",
        type=int,
        default=365,
        help="Certificate validity period in days (default: 365)"
    )
    args = parser.parse_args()

    ca_key = load_private_key(Path(args.ca_key))
    ca_cert = load_certificate(Path(args.ca_cert))

    private_key = generate_rsa_key()
    cert = issue_certificate(args.cn, private_key.public_key(), ca_key, ca_cert, args.valid_days)
    key_path, cert_path = write_key_pair(private_key, cert, Path(args.out))

    print(f"[OK] Certificate for '{args.cn}' issued successfully!")
    print(f"  Certificate: {cert_path}")
    print(f"  Private Key: {key_path}")
    print(f"  Valid until: {cert.not_valid_after_utc}")
    print(f"  Signed by: {ca_cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value}")


if __name__ == "__main__":
    main()
