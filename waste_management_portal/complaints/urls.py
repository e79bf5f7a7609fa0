from django.urls import path

from .views import (
    ActivityLogView,
    AssignWorkerView,
    CompleteWorkView,
    ComplaintDetailView,
    ComplaintListView,
    DashboardStatsView,
    EvidenceDownloadView,
    FeedbackView,
    LoginView,
    RegisterView,
    StartWorkView,
    UserActivationView,
    UserDetailView,
    UserListView,
    VerifyCompletionView,
    WorkerListView,
)

app_name = "complaints"

urlpatterns = [
    path("auth/register/", RegisterView.as_view(), name="register"),
    path("auth/login/", LoginView.as_view(), name="login"),
    path("complaints/", ComplaintListView.as_view(), name="complaint_list"),
    path("complaints/<uuid:complaint_id>/", ComplaintDetailView.as_view(), name="complaint_detail"),
    path("complaints/<uuid:complaint_id>/assign/", AssignWorkerView.as_view(), name="complaint_assign"),
    path("complaints/<uuid:complaint_id>/start/", StartWorkView.as_view(), name="complaint_start"),
    path("complaints/<uuid:complaint_id>/complete/", CompleteWorkView.as_view(), name="complaint_complete"),
    path("complaints/<uuid:complaint_id>/verify/", VerifyCompletionView.as_view(), name="complaint_verify"),
    path("complaints/<uuid:complaint_id>/feedback/", FeedbackView.as_view(), name="complaint_feedback"),
    path("complaints/<uuid:complaint_id>/logs/", ActivityLogView.as_view(), name="complaint_logs"),
    path(
        "complaints/<uuid:complaint_id>/evidence/<str:kind>/",
        EvidenceDownloadView.as_view(),
        name="complaint_evidence",
    ),
    path("users/", UserListView.as_view(), name="user_list"),
    path("users/workers/", WorkerListView.as_view(), name="worker_list"),
    path("users/<uuid:user_id>/", UserDetailView.as_view(), name="user_detail"),
    path(
        "users/<uuid:user_id>/deactivate/",
        UserActivationView.as_view(active=False),
        name="user_deactivate",
    ),
    path(
        "users/<uuid:user_id>/activate/",
        UserActivationView.as_view(active=True),
        name="user_activate",
    ),
    path("dashboard/stats/", DashboardStatsView.as_view(), name="dashboard_stats"),
]
