from django.contrib import admin

from journal.models import JournalDayClosure, JournalEntry


@admin.register(JournalEntry)
class JournalEntryAdmin(admin.ModelAdmin):
    list_display = ["date", "type", "concept", "amount"]
    list_filter = ["type"]
    search_fields = ["concept", "notes"]


@admin.register(JournalDayClosure)
class JournalDayClosureAdmin(admin.ModelAdmin):
    list_display = ["date", "created_at", "closed_by"]
    readonly_fields = [field.name for field in JournalDayClosure._meta.fields]
