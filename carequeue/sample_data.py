# carequeue/sample_data.py
# Demo data loaded on startup when SEED_SAMPLE_DATA is set. Safe to run
# more than once: the admin account is ensured on every run, everything
# else only when no departments exist yet.
import structlog

from . import schemas
from .config import Settings
from .models import UserRole
from .services.accounts import create_staff_account
from .storage import Entity, Storage

logger = structlog.get_logger(__name__)

DEMO_PASSWORD = "Hospital@123"

DEPARTMENTS = [
    ("Cardiology", "Heart and cardiovascular care"),
    ("Emergency", "Emergency medical services"),
    ("Orthopedics", "Bone and joint care"),
    ("Pediatrics", "Children healthcare"),
]

DRUGS = [
    dict(name="Paracetamol 500mg", generic_name="Acetaminophen", manufacturer="Cipla",
         quantity=500, unit_price=2, min_stock_level=100),
    dict(name="Amoxicillin 250mg", generic_name="Amoxicillin", manufacturer="Sun Pharma",
         quantity=120, unit_price=8, min_stock_level=50),
    dict(name="Atorvastatin 10mg", generic_name="Atorvastatin", manufacturer="Pfizer",
         quantity=15, unit_price=12, min_stock_level=30),
    dict(name="Salbutamol Inhaler", generic_name="Albuterol", manufacturer="GSK",
         quantity=8, unit_price=150, min_stock_level=10),
]

THEATRES = ["OT-1", "OT-2"]


def ensure_admin(storage: Storage, settings: Settings) -> schemas.User:
    admin = storage.get_user_by_username(settings.admin_username)
    if admin:
        return admin
    admin = create_staff_account(storage, schemas.StaffUserCreate(
        username=settings.admin_username,
        password=settings.admin_password,
        full_name="Hospital Administrator",
        email="admin@carequeue.hospital",
        role=UserRole.admin,
    ))
    logger.info("admin_account_created", username=admin.username)
    return admin


def _staff(username, full_name, role, **profile) -> schemas.StaffUserCreate:
    return schemas.StaffUserCreate(
        username=username,
        password=DEMO_PASSWORD,
        full_name=full_name,
        email=f"{username}@carequeue.hospital",
        role=role,
        **profile,
    )


def load_sample_data(storage: Storage, settings: Settings):
    ensure_admin(storage, settings)
    if storage.list(Entity.departments):
        return

    logger.info("sample_data_loading")
    with storage.transaction():
        departments = {
            name: storage.create(Entity.departments, {"name": name, "description": description})
            for name, description in DEPARTMENTS
        }
        accounts = [
            _staff("dr.smith", "Dr. John Smith", UserRole.doctor, department_id=departments["Cardiology"].id,
                   specialization="Cardiologist", license_number="DOC001", type="specialist"),
            _staff("dr.jones", "Dr. Sarah Jones", UserRole.doctor, department_id=departments["Emergency"].id,
                   specialization="Emergency Medicine", license_number="DOC002", type="emergency"),
            _staff("nurse.mary", "Mary Johnson", UserRole.nurse, department_id=departments["Cardiology"].id,
                   shift="day"),
            _staff("pharmacy.bob", "Bob Wilson", UserRole.pharmacy, position="pharmacist"),
            _staff("patient.alice", "Alice Brown", UserRole.patient),
        ]
        for account in accounts:
            create_staff_account(storage, account)
        for drug in DRUGS:
            storage.create(Entity.drugs, drug)
        for name in THEATRES:
            storage.create(Entity.operation_theatres, {"name": name})
    logger.info("sample_data_loaded", departments=len(DEPARTMENTS), accounts=len(accounts))
