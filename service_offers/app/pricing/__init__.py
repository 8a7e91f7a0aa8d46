"""
Pricing package.

Turns a cart and a rule snapshot into a priced result. The engine runs
catalog lookup, price composition, the primary offer strategy chain,
second pair, category discount, coupon, bonus product and upsell advice
in a fixed order.
"""
