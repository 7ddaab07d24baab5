from django.db import migrations, models

import invoices.models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Invoice",
            fields=[
                (
                    "id",
                    models.CharField(
                        default=invoices.models.gen_id, editable=False, max_length=36, primary_key=True, serialize=False
                    ),
                ),
                ("recipient", models.CharField(max_length=64)),
                ("recipient_token_account", models.CharField(max_length=64)),
                ("reference", models.CharField(max_length=64, unique=True)),
                (
                    "spl_token",
                    models.CharField(default="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", max_length=64),
                ),
                ("amount_usd", models.DecimalField(blank=True, decimal_places=6, max_digits=20, null=True)),
                ("label", models.CharField(blank=True, default="", max_length=128)),
                ("message", models.CharField(blank=True, default="", max_length=256)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("paid", "Paid"),
                            ("declined", "Declined"),
                            ("expired", "Expired"),
                        ],
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("created_at_sec", models.BigIntegerField()),
                ("expires_at_sec", models.BigIntegerField()),
                ("paid_at_sec", models.BigIntegerField(blank=True, null=True)),
                ("payer", models.CharField(blank=True, max_length=64, null=True)),
                ("paid_tx_sig", models.CharField(blank=True, max_length=128, null=True)),
                ("paid_amount_usd", models.DecimalField(blank=True, decimal_places=6, max_digits=20, null=True)),
                ("matched_tx_sig", models.CharField(blank=True, max_length=128, null=True)),
                ("needs_review", models.BooleanField(default=False)),
                ("version", models.PositiveIntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-created_at_sec"],
                "indexes": [
                    models.Index(fields=["status", "expires_at_sec"], name="invoice_status_expiry_idx"),
                ],
            },
        ),
    ]
