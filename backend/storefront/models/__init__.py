from storefront.models.carrier import CarrierCode, CarrierConfig
from storefront.models.shipment import ShipmentStatus, ShipmentRecord
