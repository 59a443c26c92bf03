"""
Management command to create a voucher signing key pair.

The server gets VOUCHER_SIGNING_KEY, terminals get VOUCHER_VERIFY_KEY only.

Usage:
    python manage.py generate_voucher_keys
"""

from django.core.management.base import BaseCommand

from apps.vouchers.services import VoucherSigner


class Command(BaseCommand):
    help = 'Generate an Ed25519 key pair for signing vouchers'

    def handle(self, *args, **options):
        signer = VoucherSigner.generate()

        self.stdout.write('Add to the server environment:\n')
        self.stdout.write(f'  VOUCHER_SIGNING_KEY={signer.private_key_b64()}\n')
        self.stdout.write('Add to every terminal environment:\n')
        self.stdout.write(f'  VOUCHER_VERIFY_KEY={signer.public_key_b64()}\n')
        self.stdout.write(
            self.style.WARNING('Keep the signing key secret. Never install it on a terminal.')
        )
