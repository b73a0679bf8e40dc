from django.core.management.base import BaseCommand, CommandError

from apps.shipping.client import ShiprocketClient
from apps.shipping.models import PickupLocation
from apps.utils.exceptions import CarrierAPIError


class Command(BaseCommand):
    help = "Compares seller pickup locations with the ones registered at Shiprocket"

    def add_arguments(self, parser):
        parser.add_argument("--seller", help="Only check this seller profile id")
        parser.add_argument(
            "--fix-nicknames",
            action="store_true",
            help="Copy the carrier's nickname onto matching local rows",
        )

    def handle(self, *args, **options):
        try:
            carrier_locations = {
                location.id: location
                for location in ShiprocketClient.from_settings().get_pickup_locations()
            }
        except CarrierAPIError as e:
            raise CommandError(f"❌ Could not fetch carrier pickup locations: {e.message}")

        self.stdout.write(f"Carrier has {len(carrier_locations)} pickup locations")

        queryset = PickupLocation.objects.select_related("seller").order_by("seller_id", "id")
        if options["seller"]:
            queryset = queryset.filter(seller_id=options["seller"])

        missing = renamed = 0
        for pickup in queryset:
            remote = carrier_locations.get(str(pickup.location_id))
            if remote is None:
                missing += 1
                self.stdout.write(self.style.ERROR(
                    f"❌ {pickup.seller.store_name}: '{pickup.nickname}' (id {pickup.location_id or '-'}) "
                    f"is not registered with the carrier"
                ))
                continue

            if remote.nickname != pickup.nickname:
                renamed += 1
                self.stdout.write(self.style.WARNING(
                    f"⚠️  {pickup.seller.store_name}: local nickname '{pickup.nickname}' "
                    f"!= carrier nickname '{remote.nickname}'"
                ))
                if options["fix_nicknames"]:
                    pickup.nickname = remote.nickname
                    pickup.save(update_fields=["nickname"])

        if missing or renamed:
            self.stdout.write(self.style.WARNING(f"Done: {missing} unregistered, {renamed} nickname mismatches"))
        else:
            self.stdout.write(self.style.SUCCESS("✅ All pickup locations match the carrier"))
