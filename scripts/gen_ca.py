"""Create the relay trust anchor: RSA key + self-signed root CA certificate."""

import argparse
from pathlib import Path

from certrelay.crypto.issue import create_root_ca, generate_rsa_key, write_key_pair


def main():
    parser = argparse.ArgumentParser(description="Create Root CA")
    parser.add_argument(
        "--name",
        type=str,
        default="Relay Root CA",
        help="Common Name for the CA"
    )
    parser.add_argument(
        "--out",
        type=str,
        default="certs",
        help="Output directory for CA files (default: certs)"
    )
    parser.add_argument(
        "--valid-days",
        type=int,
        default=3650,
        help="Validity period in days (default: 3650)"
    )
    args = parser.parse_args()

    private_key = generate_rsa_key()
    cert = create_root_ca(args.name, private_key, args.valid_days)
    key_path, cert_path = write_key_pair(private_key, cert, Path(args.out) / "ca")

    print(f"[OK] Root CA '{args.name}' created successfully!")
    print(f"  Certificate: {cert_path}")
    print(f"  Private Key: {key_path}")
    print(f"  Valid until: {cert.not_valid_after_utc}")


if __name__ == "__main__":
    main()
