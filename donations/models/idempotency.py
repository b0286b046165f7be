from django.db import models


class IdempotencyRecord(models.Model):
    key = models.CharField(max_length=255, unique=True)
    request_hash = models.CharField(max_length=64)
    response = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField()
    expires_at = models.DateTimeField()

    class Meta:
        indexes = [
            models.Index(fields=["expires_at"], name="idem_expires_at_idx"),
        ]

    @property
    def is_completed(self):
        return self.response is not None

    def __str__(self):
        return f"IdempotencyRecord<{self.key}>"
