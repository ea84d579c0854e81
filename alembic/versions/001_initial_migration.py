"""Initial migration

Revision ID: 001
Revises: 
Create Date: 2026-01-05 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

warehouse_type = sa.Enum('CENTRAL', 'PHARMACY', 'WARD', 'EMERGENCY', 'OTHER', name='warehousetype')
batch_status = sa.Enum('ACTIVE', 'EXPIRED', 'QUARANTINED', 'DISPOSED', name='batchstatus')
transaction_type = sa.Enum(
    'RECEIVE', 'DISPENSE', 'TRANSFER_IN', 'TRANSFER_OUT', 'ADJUST_INCREASE', 'ADJUST_DECREASE',
    'RETURN', 'DISPOSE', 'RESERVE', 'UNRESERVE', name='transactiontype'
)
requisition_type = sa.Enum('REGULAR', 'EMERGENCY', 'SCHEDULED', 'RETURN', name='requisitiontype')
requisition_priority = sa.Enum('LOW', 'NORMAL', 'HIGH', 'URGENT', name='requisitionpriority')
requisition_status = sa.Enum(
    'DRAFT', 'SUBMITTED', 'APPROVED', 'REJECTED', 'PARTIALLY_FILLED', 'COMPLETED', 'CANCELLED',
    name='requisitionstatus'
)
item_status = sa.Enum('PENDING', 'APPROVED', 'FULFILLED', 'REJECTED', 'CANCELLED', name='itemstatus')
workflow_action = sa.Enum('CREATE', 'SUBMIT', 'APPROVE', 'REJECT', 'CANCEL', 'FULFILL', name='workflowaction')


def upgrade() -> None:
    # Reference data
    op.create_table(
        'drugs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('hospital_id', sa.String(length=36), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('unit', sa.String(length=32), nullable=True),
        sa.Column('dosage_form', sa.String(length=64), nullable=True),
        sa.Column('strength', sa.String(length=64), nullable=True),
        sa.Column('is_controlled', sa.Boolean(), nullable=False),
        sa.Column('is_narcotic', sa.Boolean(), nullable=False),
        sa.Column('is_high_alert', sa.Boolean(), nullable=False),
        sa.Column('is_dangerous', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('hospital_id', 'code', name='uq_drug_hospital_code')
    )
    op.create_index('ix_drugs_hospital_id', 'drugs', ['hospital_id'], unique=False)

    op.create_table(
        'warehouses',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('hospital_id', sa.String(length=36), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('type', warehouse_type, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_warehouses_hospital_id', 'warehouses', ['hospital_id'], unique=False)

    op.create_table(
        'departments',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('hospital_id', sa.String(length=36), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_departments_hospital_id', 'departments', ['hospital_id'], unique=False)

    # Stock ledger
    op.create_table(
        'stock_cards',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('hospital_id', sa.String(length=36), nullable=False),
        sa.Column('warehouse_id', sa.String(length=36), nullable=False),
        sa.Column('drug_id', sa.String(length=36), nullable=False),
        sa.Column('card_number', sa.String(length=64), nullable=True),
        sa.Column('current_stock', sa.Integer(), nullable=False),
        sa.Column('reserved_stock', sa.Integer(), nullable=False),
        sa.Column('available_stock', sa.Integer(), nullable=False),
        sa.Column('reorder_point', sa.Integer(), nullable=False),
        sa.Column('max_stock', sa.Integer(), nullable=True),
        sa.Column('average_cost', sa.Numeric(precision=14, scale=4), nullable=False),
        sa.Column('last_cost', sa.Numeric(precision=14, scale=4), nullable=True),
        sa.Column('total_value', sa.Numeric(precision=16, scale=4), nullable=False),
        sa.Column('low_stock_alert', sa.Boolean(), nullable=False),
        sa.Column('over_stock_alert', sa.Boolean(), nullable=False),
        sa.Column('expiry_alert', sa.Boolean(), nullable=False),
        sa.Column('last_receive_date', sa.DateTime(), nullable=True),
        sa.Column('last_issue_date', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('current_stock >= 0', name='check_current_stock_nonneg'),
        sa.CheckConstraint('reserved_stock >= 0', name='check_reserved_stock_nonneg'),
        sa.CheckConstraint('reserved_stock <= current_stock', name='check_reserved_within_current'),
        sa.CheckConstraint('available_stock = current_stock - reserved_stock', name='check_available_stock'),
        sa.ForeignKeyConstraint(['drug_id'], ['drugs.id'], ),
        sa.ForeignKeyConstraint(['warehouse_id'], ['warehouses.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('hospital_id', 'warehouse_id', 'drug_id', name='uq_stock_card_warehouse_drug')
    )
    op.create_index('ix_stock_cards_hospital_id', 'stock_cards', ['hospital_id'], unique=False)
    op.create_index('ix_stock_cards_warehouse_id', 'stock_cards', ['warehouse_id'], unique=False)
    op.create_index('ix_stock_cards_drug_id', 'stock_cards', ['drug_id'], unique=False)

    op.create_table(
        'stock_batches',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('stock_card_id', sa.String(length=36), nullable=False),
        sa.Column('batch_number', sa.String(length=64), nullable=False),
        sa.Column('expiry_date', sa.Date(), nullable=True),
        sa.Column('manufacturing_date', sa.Date(), nullable=True),
        sa.Column('current_qty', sa.Integer(), nullable=False),
        sa.Column('reserved_qty', sa.Integer(), nullable=False),
        sa.Column('available_qty', sa.Integer(), nullable=False),
        sa.Column('unit_cost', sa.Numeric(precision=14, scale=4), nullable=True),
        sa.Column('status', batch_status, nullable=False),
        sa.Column('received_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('current_qty >= 0', name='check_batch_qty_nonneg'),
        sa.CheckConstraint('reserved_qty >= 0 AND reserved_qty <= current_qty', name='check_batch_reserved'),
        sa.ForeignKeyConstraint(['stock_card_id'], ['stock_cards.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stock_card_id', 'batch_number', name='uq_batch_card_number')
    )
    op.create_index('ix_stock_batches_stock_card_id', 'stock_batches', ['stock_card_id'], unique=False)
    op.create_index('ix_stock_batches_status', 'stock_batches', ['status'], unique=False)

    op.create_table(
        'stock_transactions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('hospital_id', sa.String(length=36), nullable=False),
        sa.Column('stock_card_id', sa.String(length=36), nullable=False),
        sa.Column('warehouse_id', sa.String(length=36), nullable=False),
        sa.Column('drug_id', sa.String(length=36), nullable=False),
        sa.Column('batch_id', sa.String(length=36), nullable=True),
        sa.Column('transaction_type', transaction_type, nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('stock_before', sa.Integer(), nullable=False),
        sa.Column('stock_after', sa.Integer(), nullable=False),
        sa.Column('reserved_before', sa.Integer(), nullable=False),
        sa.Column('reserved_after', sa.Integer(), nullable=False),
        sa.Column('unit_cost', sa.Numeric(precision=14, scale=4), nullable=False),
        sa.Column('total_cost', sa.Numeric(precision=16, scale=4), nullable=False),
        sa.Column('reference_document', sa.String(length=64), nullable=True),
        sa.Column('reference_id', sa.String(length=36), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('performed_by', sa.String(length=36), nullable=True),
        sa.Column('transaction_date', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['batch_id'], ['stock_batches.id'], ),
        sa.ForeignKeyConstraint(['stock_card_id'], ['stock_cards.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_stock_transactions_hospital_id', 'stock_transactions', ['hospital_id'], unique=False)
    op.create_index('ix_stock_transactions_stock_card_id', 'stock_transactions', ['stock_card_id'], unique=False)
    op.create_index('ix_stock_transactions_transaction_type', 'stock_transactions', ['transaction_type'], unique=False)
    op.create_index('ix_stock_transactions_reference_id', 'stock_transactions', ['reference_id'], unique=False)
    op.create_index('ix_stock_transactions_transaction_date', 'stock_transactions', ['transaction_date'], unique=False)
    op.create_index(
        'ix_stock_transactions_card_date', 'stock_transactions', ['stock_card_id', 'transaction_date'], unique=False
    )

    # Requisitions
    op.create_table(
        'requisitions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('hospital_id', sa.String(length=36), nullable=False),
        sa.Column('requisition_number', sa.String(length=32), nullable=False),
        sa.Column('type', requisition_type, nullable=False),
        sa.Column('priority', requisition_priority, nullable=False),
        sa.Column('status', requisition_status, nullable=False),
        sa.Column('requesting_department_id', sa.String(length=36), nullable=False),
        sa.Column('fulfillment_warehouse_id', sa.String(length=36), nullable=False),
        sa.Column('requester_id', sa.String(length=36), nullable=False),
        sa.Column('approver_id', sa.String(length=36), nullable=True),
        sa.Column('fulfiller_id', sa.String(length=36), nullable=True),
        sa.Column('requested_date', sa.DateTime(), nullable=False),
        sa.Column('required_date', sa.Date(), nullable=True),
        sa.Column('submitted_date', sa.DateTime(), nullable=True),
        sa.Column('approved_date', sa.DateTime(), nullable=True),
        sa.Column('fulfilled_date', sa.DateTime(), nullable=True),
        sa.Column('cancelled_date', sa.DateTime(), nullable=True),
        sa.Column('request_notes', sa.Text(), nullable=True),
        sa.Column('approver_comments', sa.Text(), nullable=True),
        sa.Column('fulfiller_comments', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('total_dispensed_value', sa.Numeric(precision=16, scale=4), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['fulfillment_warehouse_id'], ['warehouses.id'], ),
        sa.ForeignKeyConstraint(['requesting_department_id'], ['departments.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('hospital_id', 'requisition_number', name='uq_requisition_hospital_number')
    )
    op.create_index('ix_requisitions_hospital_id', 'requisitions', ['hospital_id'], unique=False)
    op.create_index('ix_requisitions_status', 'requisitions', ['status'], unique=False)
    op.create_index('ix_requisitions_requesting_department_id', 'requisitions', ['requesting_department_id'], unique=False)
    op.create_index('ix_requisitions_fulfillment_warehouse_id', 'requisitions', ['fulfillment_warehouse_id'], unique=False)
    op.create_index('ix_requisitions_created_at', 'requisitions', ['created_at'], unique=False)
    op.create_index('ix_requisitions_priority_created', 'requisitions', ['priority', 'created_at'], unique=False)

    op.create_table(
        'requisition_items',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('requisition_id', sa.String(length=36), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('drug_id', sa.String(length=36), nullable=False),
        sa.Column('stock_card_id', sa.String(length=36), nullable=False),
        sa.Column('requested_quantity', sa.Integer(), nullable=False),
        sa.Column('approved_quantity', sa.Integer(), nullable=True),
        sa.Column('fulfilled_quantity', sa.Integer(), nullable=False),
        sa.Column('status', item_status, nullable=False),
        sa.Column('unit_cost', sa.Numeric(precision=14, scale=4), nullable=True),
        sa.Column('total_cost', sa.Numeric(precision=16, scale=4), nullable=True),
        sa.Column('request_notes', sa.Text(), nullable=True),
        sa.Column('approver_notes', sa.Text(), nullable=True),
        sa.Column('dispenser_notes', sa.Text(), nullable=True),
        sa.Column('last_batch_id', sa.String(length=36), nullable=True),
        sa.Column('last_dispensed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('requested_quantity > 0', name='check_item_requested_positive'),
        sa.CheckConstraint('fulfilled_quantity >= 0', name='check_item_fulfilled_nonneg'),
        sa.CheckConstraint(
            'approved_quantity IS NULL OR fulfilled_quantity <= approved_quantity',
            name='check_item_fulfilled_within_approved'
        ),
        sa.ForeignKeyConstraint(['drug_id'], ['drugs.id'], ),
        sa.ForeignKeyConstraint(['requisition_id'], ['requisitions.id'], ),
        sa.ForeignKeyConstraint(['stock_card_id'], ['stock_cards.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_requisition_items_requisition_id', 'requisition_items', ['requisition_id'], unique=False)
    op.create_index('ix_requisition_items_stock_card_id', 'requisition_items', ['stock_card_id'], unique=False)

    op.create_table(
        'requisition_workflow',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('requisition_id', sa.String(length=36), nullable=False),
        sa.Column('action', workflow_action, nullable=False),
        sa.Column('from_status', requisition_status, nullable=True),
        sa.Column('to_status', requisition_status, nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('comments', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['requisition_id'], ['requisitions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_requisition_workflow_requisition_id', 'requisition_workflow', ['requisition_id'], unique=False)

    op.create_table(
        'requisition_counters',
        sa.Column('hospital_id', sa.String(length=36), nullable=False),
        sa.Column('next_seq', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('hospital_id')
    )

    op.create_table(
        'requisition_fulfillment_requests',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('requisition_id', sa.String(length=36), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=False),
        sa.Column('outcome', sa.JSON(), nullable=False),
        sa.Column('performed_by', sa.String(length=36), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['requisition_id'], ['requisitions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('requisition_id', 'idempotency_key', name='uq_fulfillment_request_key')
    )


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('requisition_fulfillment_requests')
    op.drop_table('requisition_counters')
    op.drop_table('requisition_workflow')
    op.drop_table('requisition_items')
    op.drop_table('requisitions')
    op.drop_table('stock_transactions')
    op.drop_table('stock_batches')
    op.drop_table('stock_cards')
    op.drop_table('departments')
    op.drop_table('warehouses')
    op.drop_table('drugs')

    # Drop enums
    bind = op.get_bind()
    for enum_type in (
        workflow_action, item_status, requisition_status, requisition_priority,
        requisition_type, transaction_type, batch_status, warehouse_type,
    ):
        enum_type.drop(bind, checkfirst=True)
