from django.contrib import admin

from catalog.models import Client, Service


@admin.register(Client)
class ClientAdmin(admin.ModelAdmin):
    list_display = ["name", "phone", "created_at"]
    search_fields = ["name", "phone"]


@admin.register(Service)
class ServiceAdmin(admin.ModelAdmin):
    list_display = ["name", "price", "active", "updated_at"]
    list_filter = ["active"]
    search_fields = ["name", "normalized_name"]
    readonly_fields = ["normalized_name"]
