"""Initial stock ledger, financial ledger and document schema

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
    ]


def _version():
    return sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1"))


def upgrade():
    # --- Parties and products ---
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("barcode", sa.String(64), nullable=True),
        sa.Column("plu", sa.String(16), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("product_type", sa.String(16), nullable=False, server_default="inventory"),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cost_price_cents", sa.Integer(), nullable=True),
        sa.Column("tax_rate_bps", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("opening_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("on_hand_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("committed_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("low_stock_threshold", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        _version(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku", name="uq_products_sku"),
        sa.UniqueConstraint("barcode", name="uq_products_barcode"),
        sa.UniqueConstraint("plu", name="uq_products_plu"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("products", schema=None) as batch_op:
        batch_op.create_index("ix_products_active_name", ["is_active", "name"], unique=False)

    op.create_table(
        "vendors",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(64), nullable=True),
        sa.Column("contact_name", sa.String(255), nullable=True),
        sa.Column("contact_email", sa.String(255), nullable=True),
        sa.Column("contact_phone", sa.String(64), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("payment_terms_days", sa.Integer(), nullable=True),
        sa.Column("credit_limit_cents", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        _version(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_vendors_code"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("vendors", schema=None) as batch_op:
        batch_op.create_index("ix_vendors_active", ["is_active"], unique=False)

    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("payment_terms_days", sa.Integer(), nullable=True),
        sa.Column("credit_limit_cents", sa.Integer(), nullable=True),
        sa.Column("tax_exempt", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("outstanding_balance_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_spent_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_visits", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_visit_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        _version(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_customers_email"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customers", schema=None) as batch_op:
        batch_op.create_index("ix_customers_active", ["is_active"], unique=False)

    op.create_table(
        "customer_reward_accounts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lifetime_points_earned", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        _version(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("customer_id", name="uq_reward_accounts_customer"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customer_reward_accounts", schema=None) as batch_op:
        batch_op.create_index("ix_customer_reward_accounts_customer_id", ["customer_id"], unique=False)

    op.create_table(
        "customer_reward_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("reward_account_id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("reference_type", sa.String(32), nullable=True),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["reward_account_id"], ["customer_reward_accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customer_reward_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_customer_reward_transactions_reward_account_id", ["reward_account_id"], unique=False)
        batch_op.create_index("ix_customer_reward_transactions_transaction_type", ["transaction_type"], unique=False)
        batch_op.create_index("ix_customer_reward_transactions_actor_user_id", ["actor_user_id"], unique=False)
        batch_op.create_index("ix_customer_reward_transactions_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_reward_txns_account_occurred", ["reward_account_id", "occurred_at"], unique=False)

    # --- Stock ledger ---
    op.create_table(
        "stock_movements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("movement_type", sa.String(32), nullable=False),
        sa.Column("quantity_change", sa.Integer(), nullable=False),
        sa.Column("reference_type", sa.String(32), nullable=True),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("note", sa.String(255), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_movements", schema=None) as batch_op:
        batch_op.create_index("ix_stock_movements_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_stock_movements_movement_type", ["movement_type"], unique=False)
        batch_op.create_index("ix_stock_movements_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_stock_movements_product_occurred", ["product_id", "occurred_at"], unique=False)
        batch_op.create_index("ix_stock_movements_reference", ["reference_type", "reference_id"], unique=False)

    # --- Financial ledger ---
    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("posting_id", sa.String(36), nullable=False),
        sa.Column("account_type", sa.String(32), nullable=False),
        sa.Column("party_type", sa.String(16), nullable=True),
        sa.Column("party_id", sa.Integer(), nullable=True),
        sa.Column("debit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("credit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reference_type", sa.String(32), nullable=False),
        sa.Column("reference_id", sa.Integer(), nullable=False),
        sa.Column("reverses_posting_id", sa.String(36), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("debit_cents >= 0", name="ck_ledger_debit_nonneg"),
        sa.CheckConstraint("credit_cents >= 0", name="ck_ledger_credit_nonneg"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("ledger_entries", schema=None) as batch_op:
        batch_op.create_index("ix_ledger_entries_posting_id", ["posting_id"], unique=False)
        batch_op.create_index("ix_ledger_entries_reverses_posting_id", ["reverses_posting_id"], unique=False)
        batch_op.create_index("ix_ledger_party_occurred", ["party_type", "party_id", "occurred_at"], unique=False)
        batch_op.create_index("ix_ledger_reference", ["reference_type", "reference_id"], unique=False)
        batch_op.create_index("ix_ledger_account_occurred", ["account_type", "occurred_at"], unique=False)

    op.create_table(
        "party_payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_number", sa.String(64), nullable=False),
        sa.Column("direction", sa.String(16), nullable=False),
        sa.Column("party_type", sa.String(16), nullable=False),
        sa.Column("party_id", sa.Integer(), nullable=False),
        sa.Column("settlement_account", sa.String(32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("reference_number", sa.String(64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_number", name="uq_party_payments_docnum"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("party_payments", schema=None) as batch_op:
        batch_op.create_index("ix_party_payments_party", ["party_type", "party_id"], unique=False)

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_type", sa.String(32), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_type", name="uq_document_sequences_type"),
        sqlite_autoincrement=True,
    )

    # --- Purchasing ---
    op.create_table(
        "purchase_orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_number", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("expected_date", sa.Date(), nullable=True),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        _version(),
        sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_number", name="uq_purchase_orders_docnum"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("purchase_orders", schema=None) as batch_op:
        batch_op.create_index("ix_purchase_orders_vendor_id", ["vendor_id"], unique=False)
        batch_op.create_index("ix_purchase_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_purchase_orders_vendor_status", ["vendor_id", "status"], unique=False)

    op.create_table(
        "purchase_order_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("purchase_order_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("quantity_ordered", sa.Integer(), nullable=False),
        sa.Column("quantity_received", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("unit_cost_cents", sa.Integer(), nullable=False),
        sa.Column("line_cost_cents", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity_received <= quantity_ordered", name="ck_po_lines_not_over_received"),
        sa.ForeignKeyConstraint(["purchase_order_id"], ["purchase_orders.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("purchase_order_id", "product_id", name="uq_po_lines_po_product"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("purchase_order_lines", schema=None) as batch_op:
        batch_op.create_index("ix_purchase_order_lines_purchase_order_id", ["purchase_order_id"], unique=False)
        batch_op.create_index("ix_purchase_order_lines_product_id", ["product_id"], unique=False)

    # --- Sales and online orders ---
    op.create_table(
        "sales",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_number", sa.String(64), nullable=False),
        sa.Column("invoice_number", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("sale_type", sa.String(16), nullable=False, server_default="pos"),
        sa.Column("status", sa.String(24), nullable=False, server_default="COMPLETED"),
        sa.Column("payment_method", sa.String(16), nullable=False),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("line_discount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("bill_discount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("refunded_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("loyalty_points_awarded", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        _version(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_number", name="uq_sales_docnum"),
        sa.UniqueConstraint("invoice_number", name="uq_sales_invoice_number"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("sales", schema=None) as batch_op:
        batch_op.create_index("ix_sales_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_sales_status", ["status"], unique=False)
        batch_op.create_index("ix_sales_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_sales_customer_occurred", ["customer_id", "occurred_at"], unique=False)

    op.create_table(
        "sale_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("tax_rate_bps", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("line_total_cents", sa.Integer(), nullable=False),
        sa.Column("returned_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("sale_lines", schema=None) as batch_op:
        batch_op.create_index("ix_sale_lines_sale_id", ["sale_id"], unique=False)
        batch_op.create_index("ix_sale_lines_product_id", ["product_id"], unique=False)

    op.create_table(
        "sale_payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("tender", sa.String(16), nullable=False),
        sa.Column("account_type", sa.String(32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("sale_payments", schema=None) as batch_op:
        batch_op.create_index("ix_sale_payments_sale_id", ["sale_id"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_number", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(24), nullable=False, server_default="placed"),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("payment_reference", sa.String(128), nullable=True),
        sa.Column("loyalty_points_awarded", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("placed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("packed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ready_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        _version(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_number", name="uq_orders_docnum"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_customer_status", ["customer_id", "status"], unique=False)

    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("tax_rate_bps", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("line_total_cents", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_lines", schema=None) as batch_op:
        batch_op.create_index("ix_order_lines_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_lines_product_id", ["product_id"], unique=False)

    # --- Shipments ---
    op.create_table(
        "shipments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_number", sa.String(64), nullable=False),
        sa.Column("shipment_type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("sale_id", sa.Integer(), nullable=True),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("transporter_name", sa.String(255), nullable=True),
        sa.Column("vehicle_number", sa.String(32), nullable=True),
        sa.Column("lr_number", sa.String(64), nullable=True),
        sa.Column("freight_charge_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("weight_kg", sa.Numeric(12, 3), nullable=True),
        sa.Column("volume_cbm", sa.Numeric(12, 3), nullable=True),
        sa.Column("dispatch_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expected_delivery_date", sa.Date(), nullable=True),
        sa.Column("delivered_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("proof_of_delivery_url", sa.String(512), nullable=True),
        sa.Column("failure_reason", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        *_timestamps(),
        _version(),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_number", name="uq_shipments_docnum"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("shipments", schema=None) as batch_op:
        batch_op.create_index("ix_shipments_sale_id", ["sale_id"], unique=False)
        batch_op.create_index("ix_shipments_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_shipments_status", ["status"], unique=False)
        batch_op.create_index("ix_shipments_type_status", ["shipment_type", "status"], unique=False)

    op.create_table(
        "shipment_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("shipment_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["shipment_id"], ["shipments.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("shipment_lines", schema=None) as batch_op:
        batch_op.create_index("ix_shipment_lines_shipment_id", ["shipment_id"], unique=False)
        batch_op.create_index("ix_shipment_lines_product_id", ["product_id"], unique=False)

    # --- Credit memos ---
    op.create_table(
        "credit_memos",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_number", sa.String(64), nullable=False),
        sa.Column("memo_type", sa.String(16), nullable=False),
        sa.Column("reason", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="DRAFT"),
        sa.Column("vendor_id", sa.Integer(), nullable=True),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("reference_shipment_id", sa.Integer(), nullable=True),
        sa.Column("reference_sale_id", sa.Integer(), nullable=True),
        sa.Column("affects_inventory", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by_user_id", sa.Integer(), nullable=True),
        sa.Column("cancelled_without_reversal", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        _version(),
        sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["reference_shipment_id"], ["shipments.id"]),
        sa.ForeignKeyConstraint(["reference_sale_id"], ["sales.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_number", name="uq_credit_memos_docnum"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("credit_memos", schema=None) as batch_op:
        batch_op.create_index("ix_credit_memos_status", ["status"], unique=False)
        batch_op.create_index("ix_credit_memos_vendor_id", ["vendor_id"], unique=False)
        batch_op.create_index("ix_credit_memos_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_credit_memos_reference_shipment_id", ["reference_shipment_id"], unique=False)
        batch_op.create_index("ix_credit_memos_reference_sale_id", ["reference_sale_id"], unique=False)
        batch_op.create_index("ix_credit_memos_type_status", ["memo_type", "status"], unique=False)

    op.create_table(
        "credit_memo_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("credit_memo_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("tax_rate_bps", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["credit_memo_id"], ["credit_memos.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("credit_memo_lines", schema=None) as batch_op:
        batch_op.create_index("ix_credit_memo_lines_credit_memo_id", ["credit_memo_id"], unique=False)
        batch_op.create_index("ix_credit_memo_lines_product_id", ["product_id"], unique=False)

    # --- Returns and expenses ---
    op.create_table(
        "sale_returns",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_number", sa.String(64), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="COMPLETED"),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("refund_method", sa.String(16), nullable=False),
        sa.Column("refund_account", sa.String(32), nullable=False),
        sa.Column("total_refund_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        _version(),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_number", name="uq_sale_returns_docnum"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("sale_returns", schema=None) as batch_op:
        batch_op.create_index("ix_sale_returns_sale_id", ["sale_id"], unique=False)
        batch_op.create_index("ix_sale_returns_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_sale_returns_occurred_at", ["occurred_at"], unique=False)

    op.create_table(
        "sale_return_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sale_return_id", sa.Integer(), nullable=False),
        sa.Column("sale_line_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("restocked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["sale_return_id"], ["sale_returns.id"]),
        sa.ForeignKeyConstraint(["sale_line_id"], ["sale_lines.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("sale_return_lines", schema=None) as batch_op:
        batch_op.create_index("ix_sale_return_lines_sale_return_id", ["sale_return_id"], unique=False)
        batch_op.create_index("ix_sale_return_lines_sale_line_id", ["sale_line_id"], unique=False)
        batch_op.create_index("ix_sale_return_lines_product_id", ["product_id"], unique=False)

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_number", sa.String(64), nullable=False),
        sa.Column("expense_type", sa.String(64), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("payment_mode", sa.String(16), nullable=False),
        sa.Column("vendor_name", sa.String(255), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("document_number", name="uq_expenses_docnum"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("expenses", schema=None) as batch_op:
        batch_op.create_index("ix_expenses_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_expenses_type_occurred", ["expense_type", "occurred_at"], unique=False)


def downgrade():
    for table in (
        "expenses",
        "sale_return_lines",
        "sale_returns",
        "credit_memo_lines",
        "credit_memos",
        "shipment_lines",
        "shipments",
        "order_lines",
        "orders",
        "sale_payments",
        "sale_lines",
        "sales",
        "purchase_order_lines",
        "purchase_orders",
        "document_sequences",
        "party_payments",
        "ledger_entries",
        "stock_movements",
        "customer_reward_transactions",
        "customer_reward_accounts",
        "customers",
        "vendors",
        "products",
    ):
        op.drop_table(table)
