"""
===============================================================================
MODELOS DE BASE DE DATOS PARA LIGHTNING P2P ESCROW BOT
===============================================================================
Define la estructura de datos para usuarios, órdenes y pagos pendientes
Persistidos con SQLAlchemy
"""

from sqlalchemy import create_engine, event, Column, Integer, String, Float, DateTime, Boolean
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime, timezone
import os

from order_states import OrderStatus

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)

# =============================================================================
# MODELO USER - INFORMACIÓN DE USUARIOS DEL BOT
# =============================================================================

class User(Base):
    """
    Modelo de Usuario - Usuarios de Telegram que operan con el bot
    Guarda el contador de disputas y el baneo (no se revierte nunca)
    """
    __tablename__ = 'users'

    # Identificadores principales
    id = Column(Integer, primary_key=True)
    telegram_id = Column(Integer, unique=True, nullable=False, index=True)
    username = Column(String(50), index=True)

    # Reputación: disputes never decreases, banned never goes back to False
    disputes = Column(Integer, default=0, nullable=False)
    banned = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<User(telegram_id={self.telegram_id}, username={self.username})>"

# =============================================================================
# MODELO ORDER - UNIDAD DE ESCROW
# =============================================================================

class Order(Base):
    """
    Modelo de Orden - Orden de compra o venta garantizada por una hold invoice
    hash/secret solo existen cuando ya se creó la hold invoice de la orden
    """
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True)
    type = Column(String(4), nullable=False)          # 'buy' o 'sell'
    description = Column(String(200))

    # Economía
    amount = Column(Integer, default=0, nullable=False)  # sats; 0 = priced from fiat
    fee = Column(Float, default=0, nullable=False)
    fiat_amount = Column(Float, nullable=False)
    fiat_code = Column(String(8), nullable=False)
    payment_method = Column(String(200), nullable=False)
    price_from_api = Column(Boolean, default=False, nullable=False)
    routing_fee = Column(Integer, default=0)

    # Participantes (users.id)
    creator_id = Column(Integer, nullable=False, index=True)
    buyer_id = Column(Integer, index=True)
    seller_id = Column(Integer, index=True)
    show_username = Column(Boolean, default=False, nullable=False)

    # =============================================================================
    # INFORMACIÓN LIGHTNING NETWORK
    # =============================================================================

    hash = Column(String(64), index=True)             # Hold invoice payment hash
    secret = Column(String(64))                       # Preimage, settles the invoice
    hold_invoice_request = Column(String(1000))
    buyer_invoice = Column(String(1000))              # Payout destination
    settle_requested = Column(Boolean, default=False, nullable=False)
    settled_at = Column(DateTime)

    # =============================================================================
    # ESTADOS Y CONTROL DE LA ORDEN
    # =============================================================================

    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)

    buyer_dispute = Column(Boolean, default=False, nullable=False)
    seller_dispute = Column(Boolean, default=False, nullable=False)
    buyer_cooperativecancel = Column(Boolean, default=False, nullable=False)
    seller_cooperativecancel = Column(Boolean, default=False, nullable=False)

    canceled_by = Column(Integer)
    paid_hold_buyer_invoice_updated = Column(Boolean, default=False, nullable=False)

    # Mensajes publicados en el canal (para borrarlos después)
    tg_channel_message1 = Column(Integer)
    tg_channel_message2 = Column(Integer)

    created_at = Column(DateTime, default=utcnow, index=True)
    taken_at = Column(DateTime, index=True)
    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Order(id={self.id}, type={self.type}, amount={self.amount}, status={self.status})>"

    @property
    def hold_invoice_amount(self):
        """Amount the seller locks: order amount plus the bot fee"""
        return int(self.amount + self.fee)

# =============================================================================
# MODELO PENDING PAYMENT - PAGOS AL COMPRADOR PARA REINTENTAR
# =============================================================================

class PendingPayment(Base):
    """
    Modelo de Pago Pendiente - Pago al comprador reintentado por el barrido
    Como máximo una fila con attempts < max por orden
    """
    __tablename__ = 'pending_payments'

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    amount = Column(Integer, nullable=False)
    payment_request = Column(String(1000), nullable=False)
    description = Column(String(200))
    hash = Column(String(64))

    attempts = Column(Integer, default=0, nullable=False)
    paid = Column(Boolean, default=False, nullable=False)
    paid_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<PendingPayment(id={self.id}, order_id={self.order_id}, attempts={self.attempts}, paid={self.paid})>"

# =============================================================================
# CONFIGURACIÓN DE BASE DE DATOS
# =============================================================================

# URL de la base de datos desde variables de entorno
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///lnp2pbot.db')

# Configuración del engine con optimizaciones
if DATABASE_URL.startswith('sqlite'):
    # Configuración específica para SQLite
    engine = create_engine(
        DATABASE_URL,
        echo=False,  # Cambiar a True para ver todas las queries SQL
        pool_pre_ping=True,
        connect_args={
            "check_same_thread": False,  # Permitir acceso desde múltiples threads
            "timeout": 20  # Timeout para operaciones de base de datos
        }
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself (see _begin_immediate)
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        # Take the write lock up front: conditional updates and
        # INSERT ... WHERE NOT EXISTS then run without interleaving
        conn.exec_driver_sql("BEGIN IMMEDIATE")
else:
    # Configuración para PostgreSQL/MySQL
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20
    )

# Factory de sesiones; objects stay readable after commit/close
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)

# =============================================================================
# FUNCIONES PÚBLICAS PARA EL BOT
# =============================================================================

def create_tables():
    """
    Crear todas las tablas en la base de datos
    Ejecutar una vez al inicializar el bot
    """
    Base.metadata.create_all(bind=engine)


def get_db():
    """
    Obtener sesión de base de datos
    IMPORTANTE: quien la abre debe cerrarla
    """
    return SessionLocal()


def drop_all_tables():
    """
    FUNCIÓN PELIGROSA: Elimina todas las tablas
    Solo usar en desarrollo o en tests
    """
    Base.metadata.drop_all(bind=engine)


def get_database_stats():
    """
    Obtener estadísticas básicas de la base de datos
    Útil para monitoring y debugging
    """
    db = get_db()
    try:
        return {
            'users': db.query(User).count(),
            'banned_users': db.query(User).filter(User.banned.is_(True)).count(),
            'orders': db.query(Order).count(),
            'pending_orders': db.query(Order).filter(Order.status == OrderStatus.PENDING.value).count(),
            'disputed_orders': db.query(Order).filter(Order.status == OrderStatus.DISPUTE.value).count(),
            'completed_orders': db.query(Order).filter(Order.status == OrderStatus.SUCCESS.value).count(),
            'pending_payments': db.query(PendingPayment).filter(PendingPayment.paid.is_(False)).count(),
        }
    finally:
        db.close()


# Crear tablas automáticamente al importar el módulo (solo en desarrollo)
if os.getenv('AUTO_CREATE_TABLES', 'false').lower() == 'true':
    create_tables()
