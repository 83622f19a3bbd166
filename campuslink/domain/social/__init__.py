"""Social domain exports."""

from .models import (  # noqa: F401
	Connection,
	ConnectionStatus,
	ModeContext,
	OtherParty,
	PartyRole,
	other_party,
)
from .service import ConnectionService  # noqa: F401
