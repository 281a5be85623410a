from app.core.enums import VehicleClass

LUXURY_MAKES = frozenset({
    "mercedes", "bmw", "audi", "lexus", "porsche", "maserati",
    "bentley", "rolls-royce", "ferrari", "lamborghini", "aston martin",
    "jaguar", "land rover", "range rover", "cadillac", "lincoln",
    "genesis", "infiniti", "acura", "volvo", "tesla",
})

EV_MAKES = frozenset({"tesla", "rivian", "lucid", "polestar"})


def detect_vehicle_class(make: str) -> VehicleClass:
    """Best-effort class from a vehicle make; EV wins over luxury."""
    m = (make or "").strip().lower()
    if m in EV_MAKES:
        return VehicleClass.EV
    if m in LUXURY_MAKES:
        return VehicleClass.LUXURY
    return VehicleClass.STANDARD
