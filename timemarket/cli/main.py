"""
Time Marketplace CLI - Command Line Interface

Main entry point for all CLI commands.
"""

import asyncio
from dataclasses import asdict

import click

from timemarket.utils.logger import setup_logging


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False), help="dotenv file with TIMEMARKET_* settings")
@click.version_option(package_name="timemarket")
@click.pass_context
def cli(ctx, debug, config_path):
    """Confidential time-slot marketplace"""
    from timemarket.core.config import load_config

    cfg = load_config(config_path)
    setup_logging(
        level="DEBUG" if debug else cfg.log_level,
        log_dir=str(cfg.log_dir) if cfg.log_dir else None,
        log_to_file=cfg.log_dir is not None,
    )

    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg


# =============================================================================
# Config Command
# =============================================================================


@cli.command("config")
@click.pass_context
def show_config(ctx):
    """Print the effective configuration"""
    for name, value in asdict(ctx.obj["config"]).items():
        click.echo(f"  {name}: {value}")


# =============================================================================
# Demo Command
# =============================================================================


@cli.command("demo")
@click.option("--price", default=100, show_default=True, help="Price per slot")
@click.option("--slots", default=5, show_default=True, help="Slots on offer")
@click.option("--buy", "quantity", default=2, show_default=True, help="Slots bought per purchase")
@click.pass_context
def demo(ctx, price, slots, quantity):
    """Run an in-memory end-to-end scenario"""
    from timemarket.crypto import keypair_from_seed
    from timemarket.core.balances import BalanceBook
    from timemarket.core.chain import Chain
    from timemarket.core.errors import MarketError
    from timemarket.core.market import OfferLedger
    from timemarket.fhe import FheGateway
    from timemarket.indexer import PurchaseIndexer

    cfg = ctx.obj["config"]

    click.echo("=" * 60)
    click.echo("  CONFIDENTIAL TIME MARKETPLACE - DEMO")
    click.echo("=" * 60)
    click.echo()

    # Setup
    owner = keypair_from_seed(b"demo-owner").address
    treasury = keypair_from_seed(b"demo-treasury").address
    alice = keypair_from_seed(b"demo-alice").address
    bob = keypair_from_seed(b"demo-bob").address

    chain = Chain(chain_id=cfg.chain_id, block_time=cfg.block_time)
    kms = [keypair_from_seed(f"demo-kms-{i}".encode()) for i in range(cfg.kms_threshold)]
    gateway = FheGateway(chain_id=cfg.chain_id, kms_signers=kms, kms_threshold=cfg.kms_threshold)
    balances = BalanceBook()
    balances.credit(bob, price * slots * 10)
    ledger = OfferLedger(owner, treasury, gateway, chain=chain, balances=balances, config=cfg)

    click.echo(f"Ledger:   {ledger.address}")
    click.echo(f"Creator:  {alice}")
    click.echo(f"Buyer:    {bob} (balance {balances.balance_of(bob)})")
    click.echo(f"KMS:      {cfg.kms_threshold}-of-{len(kms)} signatures")
    click.echo()

    try:
        # Encrypted create
        click.echo("Creating offer with encrypted price/duration/slots...")
        bundle = (
            gateway.create_encrypted_input(ledger.address, alice)
            .add64(price)
            .add32(30)
            .add32(slots)
            .encrypt()
        )
        offer_id = ledger.create_offer_encrypted(
            alice,
            "Consulting hour",
            "One hour of architecture review",
            price,
            30,
            slots,
            *bundle.handles,
            bundle.proof,
        )
        chain.mine()
        click.echo(f"  Offer {offer_id} created ({slots} slots at {price})")

        # Purchases
        while True:
            offer = ledger.get_offer(offer_id)
            if not offer.is_active:
                break
            take = min(quantity, offer.available_slots)
            purchase_id = ledger.purchase_offer(bob, offer_id, take, offer.public_price * take)
            chain.mine()
            click.echo(f"  Purchase {purchase_id}: {take} slot(s), tx {chain.last_receipt.tx_hash[:18]}...")
        click.echo(f"  Offer {offer_id} sold out: {ledger.get_offer(offer_id).state.name}")
        click.echo()

        # Reveal
        click.echo("Revealing encrypted price and slots...")
        handles = ledger.request_reveal(alice, offer_id)
        result = gateway.public_decrypt(handles)
        revealed = ledger.resolve_callback(bob, offer_id, result.cleartexts, result.decryption_proof)
        chain.mine()
        click.echo(f"  Verified: price={revealed.price}, slots={revealed.slots}")
        click.echo()
    except MarketError as e:
        raise click.ClickException(str(e))

    # Reconciliation
    click.echo("Reconstructing purchase history...")
    indexer = PurchaseIndexer.for_ledger(ledger)
    history = asyncio.run(indexer.fetch_purchase_history(bob, sort_by_time=True))
    for item in history:
        tx = item.tx_hash[:18] + "..." if item.tx_hash else "-"
        click.echo(f"  #{item.id}: offer {item.offer_id}, {item.slots} slot(s), {item.total_price} paid, tx {tx}")
    click.echo()

    click.echo("Final Statistics:")
    for name, value in ledger.stats().items():
        click.echo(f"  {name}: {value}")
    click.echo(f"  creator balance: {balances.balance_of(alice)}")
    click.echo(f"  treasury balance: {balances.balance_of(treasury)}")


if __name__ == "__main__":
    cli()
