from django.contrib import admin

from orders.models import Order, Payment


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    can_delete = False
    readonly_fields = ["amount", "payment_method", "notes", "date", "created_at"]

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ["start_date", "client", "service", "total", "deposit", "balance", "status"]
    list_filter = ["status"]
    search_fields = ["client__name", "client__phone", "service__name", "details"]
    # Money fields only move through payments and recalculation.
    readonly_fields = ["deposit", "balance", "status"]
    inlines = [PaymentInline]


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ["date", "order", "amount", "payment_method"]
    list_filter = ["payment_method"]
    readonly_fields = [field.name for field in Payment._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
