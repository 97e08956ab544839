from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from core.models import AccessEntry, AuditLog, User

admin.site.register(User, UserAdmin)


@admin.register(AccessEntry)
class AccessEntryAdmin(admin.ModelAdmin):
    list_display = ["email", "role", "active", "display_name", "updated_at"]
    list_filter = ["role", "active"]
    search_fields = ["email", "display_name"]


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ["created_at", "action", "entity", "entity_id", "actor"]
    list_filter = ["action", "entity"]
    readonly_fields = [field.name for field in AuditLog._meta.fields]
