from django.contrib import admin

from invoices.models import Invoice


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ("id", "recipient", "amount_usd", "status", "needs_review", "paid_tx_sig", "expires_at_sec")
    list_filter = ("status", "needs_review")
    search_fields = ("id", "reference", "paid_tx_sig", "matched_tx_sig", "payer")
    readonly_fields = ("reference", "recipient_token_account", "paid_at_sec", "payer", "paid_tx_sig",
                       "paid_amount_usd", "version", "updated_at")
