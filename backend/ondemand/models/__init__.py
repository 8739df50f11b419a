from ondemand.models.booking import Booking
from ondemand.models.mechanic_profile import MechanicProfile
from ondemand.models.user import User

__all__ = [
    "User",
    "MechanicProfile",
    "Booking",
]
