import enum

class Role(str, enum.Enum):
    admin = "ADMIN"
    appro = "APPRO"
    production = "PRODUCTION"
    system = "SYSTEM"

class Criticality(str, enum.Enum):
    faible = "FAIBLE"
    moyenne = "MOYENNE"
    haute = "HAUTE"
    bloquante = "BLOQUANTE"

class SupplierGrade(str, enum.Enum):
    a = "A"
    b = "B"
    c = "C"

class ProductType(str, enum.Enum):
    mp = "MP"
    pf = "PF"

class MovementType(str, enum.Enum):
    in_ = "IN"
    out = "OUT"

class MovementOrigin(str, enum.Enum):
    reception = "RECEPTION"
    production_out = "PRODUCTION_OUT"
    production_in = "PRODUCTION_IN"
    production_cancel = "PRODUCTION_CANCEL"

class LotStatus(str, enum.Enum):
    available = "AVAILABLE"
    blocked = "BLOCKED"
    consumed = "CONSUMED"

class POStatus(str, enum.Enum):
    draft = "DRAFT"
    sent = "SENT"
    confirmed = "CONFIRMED"
    partial = "PARTIAL"
    received = "RECEIVED"
    cancelled = "CANCELLED"

class SendVia(str, enum.Enum):
    email = "EMAIL"
    manual = "MANUAL"

class DemandeStatus(str, enum.Enum):
    brouillon = "BROUILLON"
    soumise = "SOUMISE"
    validee = "VALIDEE"
    rejetee = "REJETEE"
    en_cours_commande = "EN_COURS_COMMANDE"
    commandee = "COMMANDEE"
    receptionnee = "RECEPTIONNEE"

class DemandePriority(str, enum.Enum):
    normale = "NORMALE"
    urgente = "URGENTE"
    critique = "CRITIQUE"

class ReceptionStatus(str, enum.Enum):
    draft = "DRAFT"
    validated = "VALIDATED"

class ReceptionSource(str, enum.Enum):
    bc = "BC"
    demande_mp = "DEMANDE_MP"
    manual = "MANUAL"

class ProductionStatus(str, enum.Enum):
    pending = "PENDING"
    in_progress = "IN_PROGRESS"
    completed = "COMPLETED"
    cancelled = "CANCELLED"

class StockState(str, enum.Enum):
    sain = "SAIN"
    sous_seuil = "SOUS_SEUIL"
    a_commander = "A_COMMANDER"
    rupture = "RUPTURE"
    bloquant_production = "BLOQUANT_PRODUCTION"

class IrsStatus(str, enum.Enum):
    sain = "SAIN"
    surveillance = "SURVEILLANCE"
    critique = "CRITIQUE"

class SuggestionPriority(str, enum.Enum):
    critique = "CRITIQUE"
    elevee = "ELEVEE"
    normale = "NORMALE"

class AlertType(str, enum.Enum):
    low_stock_mp = "LOW_STOCK_MP"
    low_stock_pf = "LOW_STOCK_PF"
    stock_expiring = "STOCK_EXPIRING"
    po_late = "PO_LATE"
    production_bloquee = "PRODUCTION_BLOQUEE"

class AlertSeverity(str, enum.Enum):
    info = "INFO"
    warning = "WARNING"
    critical = "CRITICAL"

class AlertStatus(str, enum.Enum):
    open = "OPEN"
    acknowledged = "ACKNOWLEDGED"
    closed = "CLOSED"

class AlertHistoryAction(str, enum.Enum):
    created = "CREATED"
    updated = "UPDATED"
    acknowledged = "ACKNOWLEDGED"
    closed = "CLOSED"
    auto_closed = "AUTO_CLOSED"
