"""
Procurement module.

Scope:
- Vendors (CRUD, soft delete once purchase orders exist, bulk status updates)
- Purchase orders and requisitions with an approval step
- Vendor contracts and scored vendor evaluations
"""
