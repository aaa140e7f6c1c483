from django.urls import path

from .notifications import NotificationRouter
from .views import (
    CreateJobFromKeyView,
    JobDetailView,
    JobEventsView,
    PackageListView,
    PresignUploadView,
    UploadAndCreateJobView,
)

# One router per web process; the events view starts its listener on first use.
notification_router = NotificationRouter()

urlpatterns = [
    path("jobs/upload/", UploadAndCreateJobView.as_view(), name="upload_create_job"),
    path("jobs/from-key/", CreateJobFromKeyView.as_view(), name="jobs_from_key"),
    path("jobs/<uuid:job_id>/", JobDetailView.as_view(), name="job_detail"),
    path("jobs/<uuid:job_id>/events/", JobEventsView.as_view(router=notification_router), name="job_events"),
    path("uploads/presign/", PresignUploadView.as_view(), name="uploads_presign"),
    path("videos/", PackageListView.as_view(), name="package_list"),
]
