from django.core.management.base import BaseCommand

from donations.integrations.idempotency import IdempotencyGuard


class Command(BaseCommand):
    help = "Delete idempotency records past their retention window."

    def handle(self, *args, **options):
        guard = IdempotencyGuard()
        deleted = guard.purge_expired()
        stats = guard.get_stats()
        self.stdout.write(
            self.style.SUCCESS(
                f"idempotency purge completed: deleted={deleted} "
                f"remaining={stats['total']}"
            )
        )
