from django.contrib import admin
from django.db import transaction
from django.utils.html import format_html
from django.utils.timezone import localtime
from leaflet.admin import LeafletGeoAdmin
from import_export import resources, fields
from import_export.widgets import ForeignKeyWidget
from import_export.admin import ImportExportModelAdmin

from apps.locations.codec import GeometryCodec
from apps.locations.guard import ConsistencyGuard
from .models import Merchant, MerchantAddress
from .services import MerchantLocationService


class MerchantAddressResource(resources.ModelResource):
    class Meta:
        model = MerchantAddress
        # Only the scalar pair is importable; the guard derives the rest
        fields = ('id', 'label', 'address_text', 'city', 'latitude', 'longitude', 'is_verified')
        export_order = fields


class MerchantResource(resources.ModelResource):
    active_address = fields.Field(
        column_name='active_address_id',
        attribute='active_address',
        widget=ForeignKeyWidget(MerchantAddress, 'id')
    )

    class Meta:
        model = Merchant
        import_id_fields = ('code',)
        fields = (
            'code',
            'name',
            'is_active',
            'is_accepting_orders',
            'operational_status',
            'latitude',
            'longitude',
            'active_address',
            'delivery_radius_meters',
            'max_delivery_radius_meters',
        )
        export_order = fields


STATUS_COLORS = {
    'open': '#28a745',
    'busy': '#ffc107',
    'closed': '#6c757d',
    'temp_closed': '#fd7e14',
    'maintenance': '#dc3545',
}


@admin.register(Merchant)
class MerchantAdmin(ImportExportModelAdmin, LeafletGeoAdmin):
    resource_class = MerchantResource
    list_display = (
        'name', 'code', 'status_badge', 'coordinates_display', 'location_badge', 'last_sync_date'
    )
    list_filter = ('is_active', 'is_accepting_orders', 'operational_status', 'is_location_verified')
    search_fields = ('name', 'code')
    list_select_related = ('active_address',)
    raw_id_fields = ('owner', 'active_address')
    list_per_page = 25
    actions = ['resync_locations', 'migrate_zone_documents']

    fieldsets = (
        ('Basic Information', {'fields': ('name', 'code', 'owner', 'is_active', 'is_accepting_orders', 'operational_status')}),
        ('Location', {'fields': ('active_address', 'latitude', 'longitude', 'coordinates', 'location', 'is_location_verified', 'last_location_sync')}),
        ('Delivery', {'fields': ('delivery_radius_meters', 'max_delivery_radius_meters')}),
        ('Zones', {'fields': ('service_area', 'priority_zones', 'restricted_areas', 'delivery_zones'), 'classes': ('collapse',)}),
        ('Timestamps', {'fields': ('created_at', 'updated_at'), 'classes': ('collapse',)}),
    )

    readonly_fields = ('coordinates', 'location', 'last_location_sync', 'created_at', 'updated_at')
    settings_overrides = {'DEFAULT_CENTER': (14.5995, 120.9842), 'DEFAULT_ZOOM': 11}

    def save_model(self, request, obj, form, change):
        # Zones drawn on the map keep their stored GeoJSON document in step
        for zone_field in Merchant.ZONE_FIELDS:
            if zone_field in form.changed_data:
                setattr(obj, f"{zone_field}_geojson", GeometryCodec.native_to_polygon_document(getattr(obj, zone_field)))
        super().save_model(request, obj, form, change)

    def status_badge(self, obj):
        color = STATUS_COLORS.get(obj.operational_status, '#6c757d')
        return format_html('<span style="background-color: {}; color: white; padding: 2px 6px; border-radius: 3px; font-size: 0.8em;">{}</span>', color, obj.get_operational_status_display())
    status_badge.short_description = "Status"

    def coordinates_display(self, obj):
        if obj.location is None:
            return "Not set"
        return f"{obj.latitude}, {obj.longitude}"
    coordinates_display.short_description = "Coordinates"

    def location_badge(self, obj):
        if obj.is_location_verified: return format_html('<span style="color: green; font-weight: bold;">✓ Verified</span>')
        return format_html('<span style="color: #999;">Unverified</span>')
    location_badge.short_description = "Location"

    def last_sync_date(self, obj):
        if obj.last_location_sync: return localtime(obj.last_location_sync).strftime('%d/%m/%Y %H:%M')
        return "N/A"
    last_sync_date.short_description = "Last Sync"
    last_sync_date.admin_order_field = 'last_location_sync'

    @admin.action(description='Re-derive location fields')
    def resync_locations(self, request, queryset):
        changed = 0
        with transaction.atomic():
            for merchant in queryset.select_for_update():
                if ConsistencyGuard.apply(merchant, force=True):
                    merchant.save(update_fields=Merchant.guarded_update_fields())
                    changed += 1
        self.message_user(request, f"{changed} merchant locations re-derived.")

    @admin.action(description='Migrate stored zone documents to geometry')
    def migrate_zone_documents(self, request, queryset):
        migrated = failed = 0
        for merchant_id in queryset.values_list('id', flat=True):
            done, bad = MerchantLocationService.migrate_legacy_zones(merchant_id)
            migrated += len(done)
            failed += len(bad)
        self.message_user(request, f"{migrated} zones migrated, {failed} failed.")


@admin.register(MerchantAddress)
class MerchantAddressAdmin(ImportExportModelAdmin, LeafletGeoAdmin):
    resource_class = MerchantAddressResource
    list_display = ('id', 'label', 'city', 'coordinates_display', 'is_verified', 'created_at')
    list_filter = ('is_verified', 'city')
    search_fields = ('label', 'address_text', 'city')
    list_per_page = 25

    readonly_fields = ('coordinates', 'location', 'created_at', 'updated_at')

    def coordinates_display(self, obj):
        if obj.location is None:
            return "Not set"
        return f"{obj.latitude}, {obj.longitude}"
    coordinates_display.short_description = "Coordinates"
