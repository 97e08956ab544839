from django.urls import path
from rest_framework.routers import DefaultRouter

from journal.views import DailySummaryView, JournalDayClosureViewSet, JournalEntryViewSet

router = DefaultRouter()
router.register(r"journal/entries", JournalEntryViewSet, basename="journal-entry")
router.register(r"journal/closures", JournalDayClosureViewSet, basename="journal-closure")

urlpatterns = router.urls + [
    path("journal/daily-summary/", DailySummaryView.as_view(), name="journal-daily-summary"),
]
