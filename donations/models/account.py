import uuid

from django.db import models


class LedgerAccount(models.Model):
    uuid = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    public_key = models.CharField(max_length=128, unique=True)
    # Opaque handle passed to the ledger client as the payment source.
    secret_ref = models.CharField(max_length=256, blank=True, default="")
    label = models.CharField(max_length=128, blank=True, default="")
    sync_enabled = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"LedgerAccount<{self.pk}:{self.public_key}>"
