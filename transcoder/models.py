import uuid
from django.db import models


class Job(models.Model):
    class Status(models.TextChoices):
        QUEUED = "queued"
        ACTIVE = "active"
        COMPLETED = "completed"
        FAILED = "failed"

    TERMINAL = (Status.COMPLETED, Status.FAILED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    source_key = models.CharField(max_length=512)            # S3 key under uploads/
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.QUEUED)
    progress = models.PositiveSmallIntegerField(default=0)   # 0..100, only ever raised
    error = models.TextField(blank=True, default="")
    package_key = models.CharField(max_length=512, blank=True, default="")  # hls/<id>/master.m3u8

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Job {self.id} ({self.status}, {self.progress}%)"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL
