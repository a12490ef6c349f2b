import django.contrib.gis.db.models.fields
import django.contrib.postgres.indexes
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="MerchantAddress",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("latitude", models.DecimalField(blank=True, decimal_places=7, max_digits=10, null=True)),
                ("longitude", models.DecimalField(blank=True, decimal_places=7, max_digits=10, null=True)),
                ("coordinates", models.JSONField(blank=True, editable=False, null=True)),
                ("location", django.contrib.gis.db.models.fields.PointField(blank=True, editable=False, null=True, spatial_index=False, srid=4326)),
                ("label", models.CharField(blank=True, max_length=50)),
                ("address_text", models.TextField(blank=True)),
                ("city", models.CharField(blank=True, max_length=50)),
                ("is_verified", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["city"], name="mch_addr_city_idx"),
                    django.contrib.postgres.indexes.GistIndex(fields=["location"], name="mch_addr_loc_gist"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Merchant",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("latitude", models.DecimalField(blank=True, decimal_places=7, max_digits=10, null=True)),
                ("longitude", models.DecimalField(blank=True, decimal_places=7, max_digits=10, null=True)),
                ("coordinates", models.JSONField(blank=True, editable=False, null=True)),
                ("location", django.contrib.gis.db.models.fields.PointField(blank=True, editable=False, null=True, spatial_index=False, srid=4326)),
                ("name", models.CharField(max_length=100)),
                ("code", models.CharField(max_length=30, unique=True)),
                ("is_active", models.BooleanField(default=True)),
                ("is_accepting_orders", models.BooleanField(default=True)),
                ("operational_status", models.CharField(choices=[("open", "Open"), ("closed", "Closed"), ("busy", "Busy"), ("temp_closed", "Temporarily Closed"), ("maintenance", "Maintenance")], default="open", max_length=20)),
                ("delivery_radius_meters", models.PositiveIntegerField(blank=True, null=True)),
                ("max_delivery_radius_meters", models.PositiveIntegerField(blank=True, null=True)),
                ("service_area", django.contrib.gis.db.models.fields.PolygonField(blank=True, null=True, spatial_index=False, srid=4326)),
                ("priority_zones", django.contrib.gis.db.models.fields.MultiPolygonField(blank=True, null=True, spatial_index=False, srid=4326)),
                ("restricted_areas", django.contrib.gis.db.models.fields.MultiPolygonField(blank=True, null=True, spatial_index=False, srid=4326)),
                ("delivery_zones", django.contrib.gis.db.models.fields.MultiPolygonField(blank=True, null=True, spatial_index=False, srid=4326)),
                ("service_area_geojson", models.JSONField(blank=True, null=True)),
                ("priority_zones_geojson", models.JSONField(blank=True, null=True)),
                ("restricted_areas_geojson", models.JSONField(blank=True, null=True)),
                ("delivery_zones_geojson", models.JSONField(blank=True, null=True)),
                ("last_location_sync", models.DateTimeField(blank=True, null=True)),
                ("is_location_verified", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("active_address", models.ForeignKey(blank=True, help_text="When set, the merchant's location mirrors this address", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="merchants", to="merchants.merchantaddress")),
                ("owner", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="merchants", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["is_active", "is_accepting_orders", "operational_status"], name="merchant_status_idx"),
                    django.contrib.postgres.indexes.GistIndex(fields=["location"], name="merchant_loc_gist"),
                    django.contrib.postgres.indexes.GistIndex(condition=models.Q(("is_active", True)), fields=["location"], name="merchant_loc_act_gist"),
                    django.contrib.postgres.indexes.GistIndex(fields=["service_area"], name="merchant_service_area_gist"),
                    django.contrib.postgres.indexes.GistIndex(fields=["priority_zones"], name="merchant_priority_zon_gist"),
                    django.contrib.postgres.indexes.GistIndex(fields=["restricted_areas"], name="merchant_restricted_a_gist"),
                    django.contrib.postgres.indexes.GistIndex(fields=["delivery_zones"], name="merchant_delivery_zon_gist"),
                ],
            },
        ),
    ]
