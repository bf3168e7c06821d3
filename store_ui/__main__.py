from store_ui.bootstrap import main

raise SystemExit(main())
