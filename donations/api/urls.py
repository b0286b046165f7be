from django.urls import path

from donations.api.views import (
    DonationCreateAPIView,
    DonationDetailAPIView,
    ReconciliationAPIView,
    ScheduleCancelAPIView,
    ScheduleCreateAPIView,
    ScheduleDetailAPIView,
    SchedulePauseAPIView,
    ScheduleResumeAPIView,
    StatusAPIView,
)

urlpatterns = [
    path("donations/", DonationCreateAPIView.as_view(), name="donation-create"),
    path(
        "donations/<int:transaction_id>/",
        DonationDetailAPIView.as_view(),
        name="donation-detail",
    ),
    path("schedules/", ScheduleCreateAPIView.as_view(), name="schedule-create"),
    path(
        "schedules/<int:schedule_id>/",
        ScheduleDetailAPIView.as_view(),
        name="schedule-detail",
    ),
    path(
        "schedules/<int:schedule_id>/cancel/",
        ScheduleCancelAPIView.as_view(),
        name="schedule-cancel",
    ),
    path(
        "schedules/<int:schedule_id>/pause/",
        SchedulePauseAPIView.as_view(),
        name="schedule-pause",
    ),
    path(
        "schedules/<int:schedule_id>/resume/",
        ScheduleResumeAPIView.as_view(),
        name="schedule-resume",
    ),
    path(
        "reconciliation/",
        ReconciliationAPIView.as_view(),
        name="reconciliation-run",
    ),
    path("status/", StatusAPIView.as_view(), name="worker-status"),
]
