from almahost.cli import main

main(prog_name="almahost")
