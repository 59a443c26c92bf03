from django.db import models
import uuid


class StayStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    ACTIVE = 'active', 'Active'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


class Stay(models.Model):
    """A guest's stay at the hotel."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    guest_name = models.CharField(max_length=200)
    room_number = models.CharField(max_length=20)

    # Occupancy window
    check_in = models.DateField()
    check_out = models.DateField()

    status = models.CharField(
        max_length=20,
        choices=StayStatus.choices,
        default=StayStatus.PENDING
    )

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'stays'
        indexes = [
            models.Index(fields=['status']),
            models.Index(fields=['check_in', 'check_out']),
        ]
        ordering = ['-check_in']

    def __str__(self):
        return f"{self.guest_name} - room {self.room_number} ({self.check_in} to {self.check_out})"

    @property
    def is_active(self):
        return self.status == StayStatus.ACTIVE

    def covers(self, start, end):
        """True when [start, end] lies inside the check-in/check-out window."""
        return self.check_in <= start and end <= self.check_out
